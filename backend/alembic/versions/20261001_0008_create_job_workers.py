from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261001_0008"
down_revision = "20261001_0007"
branch_labels = None
depends_on = None

_NOW = sa.text("(strftime('%Y-%m-%dT%H:%M:%fZ','now'))")


def upgrade() -> None:
    op.create_table(
        "job_workers",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("worker_id", sa.Text(), nullable=False, unique=True),
        sa.Column("queue_name", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("hostname", sa.Text(), nullable=True),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'idle'")),
        sa.Column("current_job_id", sa.Text(), nullable=True),
        sa.Column("jobs_processed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("jobs_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("started_at", sa.Text(), nullable=False),
        sa.Column("last_heartbeat", sa.Text(), nullable=False),
        sa.CheckConstraint("status IN ('idle','busy','stopped','crashed')", name="ck_job_workers_status"),
    )
    op.create_index(
        "idx_job_workers_status_heartbeat",
        "job_workers",
        ["status", "last_heartbeat"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_job_workers_status_heartbeat", table_name="job_workers")
    op.drop_table("job_workers")
