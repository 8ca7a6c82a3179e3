from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from erp_jobs.db.models.base import NOW_SQL, Base


class JobRow(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('pending','scheduled','running','completed','failed','cancelled','paused')",
            name="ck_jobs_status",
        ),
        sa.CheckConstraint(
            "kind IN ('one_time','recurring','cron','event_triggered')",
            name="ck_jobs_kind",
        ),
        sa.CheckConstraint("priority BETWEEN 0 AND 3", name="ck_jobs_priority"),
        sa.UniqueConstraint("schedule_id", "schedule_fire_at", name="uq_jobs_schedule_fire"),
        sa.UniqueConstraint("bulk_request_id", "bulk_index", name="uq_jobs_bulk_index"),
        sa.Index("idx_jobs_claim", "queue", "status", "priority", "next_run_at", "id"),
        sa.Index("idx_jobs_status_expires", "status", "expires_at"),
        sa.Index("idx_jobs_locked_by", "locked_by"),
        sa.Index("idx_jobs_handler", "handler"),
    )

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    created_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
    updated_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)

    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    handler: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    payload_json: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'{}'"))
    queue: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'default'"))
    priority: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("1"))
    kind: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'one_time'"))
    cron_expression: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    interval_seconds: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    timezone: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'UTC'"))

    scheduled_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    next_run_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    status: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'pending'"))

    run_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    success_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    failure_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    retry_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    max_retries: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("3"))
    retry_delay_seconds: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("60"))
    timeout_seconds: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))

    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    last_duration_ms: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    avg_duration_ms: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    tags: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("''"))
    created_by: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    locked_by: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    locked_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    expires_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    cancel_requested: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    cancel_reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    resource_key: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    template_id: Mapped[str | None] = mapped_column(
        sa.Text(), sa.ForeignKey("job_templates.id", ondelete="SET NULL"), nullable=True
    )
    schedule_id: Mapped[str | None] = mapped_column(
        sa.Text(), sa.ForeignKey("job_schedules.id", ondelete="SET NULL"), nullable=True
    )
    schedule_fire_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    bulk_request_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    bulk_index: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    rerun_of: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    started_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    completed_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    last_run_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    last_success_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    last_failure_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
