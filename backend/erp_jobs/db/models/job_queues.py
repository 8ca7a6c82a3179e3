from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from erp_jobs.db.models.base import NOW_SQL, Base


class JobQueue(Base):
    __tablename__ = "job_queues"
    __table_args__ = (
        sa.CheckConstraint("status IN ('active','paused','stopped')", name="ck_job_queues_status"),
        sa.CheckConstraint("max_concurrent_jobs >= 0", name="ck_job_queues_max_concurrent"),
    )

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    name: Mapped[str] = mapped_column(sa.Text(), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    max_concurrent_jobs: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("10"))
    status: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'active'"))

    current_jobs: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    total_processed: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    total_failed: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    avg_wait_time_ms: Mapped[float] = mapped_column(sa.Float(), nullable=False, server_default=sa.text("0"))
    avg_process_time_ms: Mapped[float] = mapped_column(sa.Float(), nullable=False, server_default=sa.text("0"))

    created_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
    updated_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
