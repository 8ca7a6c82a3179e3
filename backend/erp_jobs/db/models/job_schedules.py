from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from erp_jobs.db.models.base import NOW_SQL, Base


class JobSchedule(Base):
    __tablename__ = "job_schedules"
    __table_args__ = (
        sa.CheckConstraint(
            "schedule_kind IN ('cron','interval','daily','weekly','monthly','specific_times')",
            name="ck_job_schedules_kind",
        ),
        sa.Index("idx_job_schedules_due", "enabled", "next_scheduled_run"),
    )

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    template_id: Mapped[str | None] = mapped_column(
        sa.Text(), sa.ForeignKey("job_templates.id", ondelete="SET NULL"), nullable=True
    )
    job_name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    handler: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    default_payload_json: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'{}'"))
    queue: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'default'"))
    priority: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("1"))
    max_retries: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("3"))
    retry_delay_seconds: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("60"))
    timeout_seconds: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)

    schedule_kind: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    cron_expression: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    interval_minutes: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    specific_times_json: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    run_on_days: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    timezone: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'UTC'"))
    start_date: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    end_date: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    next_scheduled_run: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    last_run: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    enabled: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("1"))
    created_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
    updated_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
