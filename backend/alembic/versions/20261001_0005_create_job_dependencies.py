from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261001_0005"
down_revision = "20261001_0004"
branch_labels = None
depends_on = None

_NOW = sa.text("(strftime('%Y-%m-%dT%H:%M:%fZ','now'))")


def upgrade() -> None:
    op.create_table(
        "job_dependencies",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("job_id", sa.Text(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "depends_on_job_id",
            sa.Text(),
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("dependency_type", sa.Text(), nullable=False),
        sa.Column("satisfied", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.Text(), nullable=False, server_default=_NOW),
        sa.CheckConstraint(
            "dependency_type IN ('on_success','on_failure','on_completion')",
            name="ck_job_dependencies_type",
        ),
        sa.UniqueConstraint("job_id", "depends_on_job_id", name="uq_job_dependencies_edge"),
    )
    op.create_index("idx_job_dependencies_prereq", "job_dependencies", ["depends_on_job_id"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_job_dependencies_prereq", table_name="job_dependencies")
    op.drop_table("job_dependencies")
