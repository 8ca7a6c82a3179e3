from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from erp_jobs.db.models.base import Base


class JobWorker(Base):
    __tablename__ = "job_workers"
    __table_args__ = (
        sa.CheckConstraint("status IN ('idle','busy','stopped','crashed')", name="ck_job_workers_status"),
        sa.Index("idx_job_workers_status_heartbeat", "status", "last_heartbeat"),
    )

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    worker_id: Mapped[str] = mapped_column(sa.Text(), nullable=False, unique=True)
    # Comma separated list of served queues; empty means every active queue.
    queue_name: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("''"))
    hostname: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    pid: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    status: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'idle'"))
    current_job_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    jobs_processed: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    jobs_failed: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    started_at: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    last_heartbeat: Mapped[str] = mapped_column(sa.Text(), nullable=False)
