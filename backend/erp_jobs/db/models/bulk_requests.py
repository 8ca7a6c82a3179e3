from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from erp_jobs.db.models.base import NOW_SQL, Base


class BulkRequest(Base):
    __tablename__ = "bulk_requests"
    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('pending','processing','completed','failed','cancelled')",
            name="ck_bulk_requests_status",
        ),
        sa.CheckConstraint("created <= total", name="ck_bulk_requests_created"),
        sa.Index("idx_bulk_requests_status", "status"),
    )

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    handler: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    payloads_json: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    queue: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'default'"))
    priority: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("1"))
    max_retries: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("3"))
    timeout_seconds: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    created_by: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    status: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'pending'"))
    total: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    created: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    completed: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    failed: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    created_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
    updated_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
