from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261001_0002"
down_revision = "20261001_0001"
branch_labels = None
depends_on = None

_NOW = sa.text("(strftime('%Y-%m-%dT%H:%M:%fZ','now'))")


def upgrade() -> None:
    op.create_table(
        "job_schedules",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column(
            "template_id",
            sa.Text(),
            sa.ForeignKey("job_templates.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("job_name", sa.Text(), nullable=False),
        sa.Column("handler", sa.Text(), nullable=False),
        sa.Column("default_payload_json", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("queue", sa.Text(), nullable=False, server_default=sa.text("'default'")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("retry_delay_seconds", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("timeout_seconds", sa.Integer(), nullable=True),
        sa.Column("schedule_kind", sa.Text(), nullable=False),
        sa.Column("cron_expression", sa.Text(), nullable=True),
        sa.Column("interval_minutes", sa.Integer(), nullable=True),
        sa.Column("specific_times_json", sa.Text(), nullable=True),
        sa.Column("run_on_days", sa.Integer(), nullable=True),
        sa.Column("timezone", sa.Text(), nullable=False, server_default=sa.text("'UTC'")),
        sa.Column("start_date", sa.Text(), nullable=True),
        sa.Column("end_date", sa.Text(), nullable=True),
        sa.Column("next_scheduled_run", sa.Text(), nullable=True),
        sa.Column("last_run", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.Text(), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.Text(), nullable=False, server_default=_NOW),
        sa.CheckConstraint(
            "schedule_kind IN ('cron','interval','daily','weekly','monthly','specific_times')",
            name="ck_job_schedules_kind",
        ),
    )
    op.create_index("idx_job_schedules_due", "job_schedules", ["enabled", "next_scheduled_run"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_job_schedules_due", table_name="job_schedules")
    op.drop_table("job_schedules")
