from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261001_0003"
down_revision = "20261001_0002"
branch_labels = None
depends_on = None

_NOW = sa.text("(strftime('%Y-%m-%dT%H:%M:%fZ','now'))")


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("created_at", sa.Text(), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.Text(), nullable=False, server_default=_NOW),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("handler", sa.Text(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("queue", sa.Text(), nullable=False, server_default=sa.text("'default'")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("kind", sa.Text(), nullable=False, server_default=sa.text("'one_time'")),
        sa.Column("cron_expression", sa.Text(), nullable=True),
        sa.Column("interval_seconds", sa.Integer(), nullable=True),
        sa.Column("timezone", sa.Text(), nullable=False, server_default=sa.text("'UTC'")),
        sa.Column("scheduled_at", sa.Text(), nullable=True),
        sa.Column("next_run_at", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("retry_delay_seconds", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("timeout_seconds", sa.Integer(), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_duration_ms", sa.Integer(), nullable=True),
        sa.Column("avg_duration_ms", sa.Float(), nullable=True),
        sa.Column("tags", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column("locked_by", sa.Text(), nullable=True),
        sa.Column("locked_at", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.Text(), nullable=True),
        sa.Column("cancel_requested", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("resource_key", sa.Text(), nullable=True),
        sa.Column(
            "template_id",
            sa.Text(),
            sa.ForeignKey("job_templates.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "schedule_id",
            sa.Text(),
            sa.ForeignKey("job_schedules.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("schedule_fire_at", sa.Text(), nullable=True),
        sa.Column("bulk_request_id", sa.Text(), nullable=True),
        sa.Column("bulk_index", sa.Integer(), nullable=True),
        sa.Column("rerun_of", sa.Text(), nullable=True),
        sa.Column("started_at", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.Text(), nullable=True),
        sa.Column("last_run_at", sa.Text(), nullable=True),
        sa.Column("last_success_at", sa.Text(), nullable=True),
        sa.Column("last_failure_at", sa.Text(), nullable=True),
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
    )

    op.create_index(
        "idx_jobs_claim",
        "jobs",
        ["queue", "status", "priority", "next_run_at", "id"],
        unique=False,
    )
    op.create_index("idx_jobs_status_expires", "jobs", ["status", "expires_at"], unique=False)
    op.create_index("idx_jobs_locked_by", "jobs", ["locked_by"], unique=False)
    op.create_index("idx_jobs_handler", "jobs", ["handler"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_jobs_handler", table_name="jobs")
    op.drop_index("idx_jobs_locked_by", table_name="jobs")
    op.drop_index("idx_jobs_status_expires", table_name="jobs")
    op.drop_index("idx_jobs_claim", table_name="jobs")
    op.drop_table("jobs")
