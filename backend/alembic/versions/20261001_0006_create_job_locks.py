from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261001_0006"
down_revision = "20261001_0005"
branch_labels = None
depends_on = None

_NOW = sa.text("(strftime('%Y-%m-%dT%H:%M:%fZ','now'))")


def upgrade() -> None:
    op.create_table(
        "job_locks",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("resource_key", sa.Text(), nullable=False, unique=True),
        sa.Column("job_id", sa.Text(), nullable=False),
        sa.Column("locked_at", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.Text(), nullable=False),
    )
    op.create_index("idx_job_locks_job", "job_locks", ["job_id"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_job_locks_job", table_name="job_locks")
    op.drop_table("job_locks")
