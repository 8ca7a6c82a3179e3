from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from erp_jobs.db.models.base import NOW_SQL, Base


class JobMetric(Base):
    __tablename__ = "job_metrics"
    __table_args__ = (
        sa.UniqueConstraint("date", "hour", "queue_name", name="uq_job_metrics_bucket"),
        sa.CheckConstraint("hour BETWEEN 0 AND 23", name="ck_job_metrics_hour"),
    )

    id: Mapped[int] = mapped_column(sa.Integer(), primary_key=True, autoincrement=True)
    date: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    hour: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    queue_name: Mapped[str] = mapped_column(sa.Text(), nullable=False)

    jobs_submitted: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    jobs_started: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    jobs_completed: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    jobs_failed: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    avg_wait_time_ms: Mapped[float] = mapped_column(sa.Float(), nullable=False, server_default=sa.text("0"))
    avg_process_time_ms: Mapped[float] = mapped_column(sa.Float(), nullable=False, server_default=sa.text("0"))

    created_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
    updated_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
