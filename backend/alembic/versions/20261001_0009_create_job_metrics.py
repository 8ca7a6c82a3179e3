from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261001_0009"
down_revision = "20261001_0008"
branch_labels = None
depends_on = None

_NOW = sa.text("(strftime('%Y-%m-%dT%H:%M:%fZ','now'))")


def upgrade() -> None:
    op.create_table(
        "job_metrics",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("date", sa.Text(), nullable=False),
        sa.Column("hour", sa.Integer(), nullable=False),
        sa.Column("queue_name", sa.Text(), nullable=False),
        sa.Column("jobs_submitted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("jobs_started", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("jobs_completed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("jobs_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("avg_wait_time_ms", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("avg_process_time_ms", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.Text(), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.Text(), nullable=False, server_default=_NOW),
        sa.UniqueConstraint("date", "hour", "queue_name", name="uq_job_metrics_bucket"),
        sa.CheckConstraint("hour BETWEEN 0 AND 23", name="ck_job_metrics_hour"),
    )


def downgrade() -> None:
    op.drop_table("job_metrics")
