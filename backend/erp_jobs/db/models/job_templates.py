from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from erp_jobs.db.models.base import NOW_SQL, Base


class JobTemplate(Base):
    __tablename__ = "job_templates"

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    code: Mapped[str] = mapped_column(sa.Text(), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    handler: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    default_payload_json: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'{}'"))
    default_priority: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("1"))
    default_timeout_seconds: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("300"))
    default_max_retries: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("3"))
    default_retry_delay_seconds: Mapped[int] = mapped_column(
        sa.Integer(), nullable=False, server_default=sa.text("60")
    )
    queue: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'default'"))
    tags: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("''"))
    created_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
    updated_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
