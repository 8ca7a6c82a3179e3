from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from erp_jobs.db.models.base import Base


class JobLock(Base):
    __tablename__ = "job_locks"
    __table_args__ = (sa.Index("idx_job_locks_job", "job_id"),)

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    resource_key: Mapped[str] = mapped_column(sa.Text(), nullable=False, unique=True)
    # No foreign key: a lock may briefly outlive its job and is reclaimed by TTL.
    job_id: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    locked_at: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    expires_at: Mapped[str] = mapped_column(sa.Text(), nullable=False)
