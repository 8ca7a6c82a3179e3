from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261001_0004"
down_revision = "20261001_0003"
branch_labels = None
depends_on = None

_NOW = sa.text("(strftime('%Y-%m-%dT%H:%M:%fZ','now'))")


def upgrade() -> None:
    op.create_table(
        "job_executions",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("job_id", sa.Text(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("execution_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("started_at", sa.Text(), nullable=False),
        sa.Column("completed_at", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_stack", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.Text(), nullable=True),
        sa.Column("retry_of", sa.Text(), nullable=True),
        sa.Column("retry_number", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("worker_id", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Text(), nullable=False, server_default=_NOW),
        sa.CheckConstraint(
            "status IN ('running','completed','failed','cancelled','timeout')",
            name="ck_job_executions_status",
        ),
        sa.UniqueConstraint("job_id", "execution_number", name="uq_job_executions_number"),
    )
    op.create_index("idx_job_executions_job_status", "job_executions", ["job_id", "status"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_job_executions_job_status", table_name="job_executions")
    op.drop_table("job_executions")
