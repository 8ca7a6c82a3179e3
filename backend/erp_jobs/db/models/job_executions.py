from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from erp_jobs.db.models.base import NOW_SQL, Base


class JobExecution(Base):
    __tablename__ = "job_executions"
    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('running','completed','failed','cancelled','timeout')",
            name="ck_job_executions_status",
        ),
        sa.UniqueConstraint("job_id", "execution_number", name="uq_job_executions_number"),
        sa.Index("idx_job_executions_job_status", "job_id", "status"),
    )

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    job_id: Mapped[str] = mapped_column(sa.Text(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    execution_number: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    status: Mapped[str] = mapped_column(sa.Text(), nullable=False)

    started_at: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    completed_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)

    result_json: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    error_stack: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    error_kind: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    retry_of: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    retry_number: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    worker_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
