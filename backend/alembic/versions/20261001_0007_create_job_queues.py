from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261001_0007"
down_revision = "20261001_0006"
branch_labels = None
depends_on = None

_NOW = sa.text("(strftime('%Y-%m-%dT%H:%M:%fZ','now'))")


def upgrade() -> None:
    op.create_table(
        "job_queues",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("max_concurrent_jobs", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'active'")),
        sa.Column("current_jobs", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_processed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("avg_wait_time_ms", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("avg_process_time_ms", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.Text(), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.Text(), nullable=False, server_default=_NOW),
        sa.CheckConstraint("status IN ('active','paused','stopped')", name="ck_job_queues_status"),
        sa.CheckConstraint("max_concurrent_jobs >= 0", name="ck_job_queues_max_concurrent"),
    )


def downgrade() -> None:
    op.drop_table("job_queues")
