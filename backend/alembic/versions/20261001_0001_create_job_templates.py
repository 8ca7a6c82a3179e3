from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None

_NOW = sa.text("(strftime('%Y-%m-%dT%H:%M:%fZ','now'))")


def upgrade() -> None:
    op.create_table(
        "job_templates",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("code", sa.Text(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("handler", sa.Text(), nullable=False),
        sa.Column("default_payload_json", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("default_priority", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("default_timeout_seconds", sa.Integer(), nullable=False, server_default=sa.text("300")),
        sa.Column("default_max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("default_retry_delay_seconds", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("queue", sa.Text(), nullable=False, server_default=sa.text("'default'")),
        sa.Column("tags", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("created_at", sa.Text(), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.Text(), nullable=False, server_default=_NOW),
    )


def downgrade() -> None:
    op.drop_table("job_templates")
