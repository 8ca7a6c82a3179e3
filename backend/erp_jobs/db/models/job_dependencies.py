from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from erp_jobs.db.models.base import NOW_SQL, Base


class JobDependency(Base):
    __tablename__ = "job_dependencies"
    __table_args__ = (
        sa.CheckConstraint(
            "dependency_type IN ('on_success','on_failure','on_completion')",
            name="ck_job_dependencies_type",
        ),
        sa.UniqueConstraint("job_id", "depends_on_job_id", name="uq_job_dependencies_edge"),
        sa.Index("idx_job_dependencies_prereq", "depends_on_job_id"),
    )

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    job_id: Mapped[str] = mapped_column(sa.Text(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    depends_on_job_id: Mapped[str] = mapped_column(
        sa.Text(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    dependency_type: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    satisfied: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    created_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=NOW_SQL)
