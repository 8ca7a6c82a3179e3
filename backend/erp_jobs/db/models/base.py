from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase

NOW_SQL = sa.text("(strftime('%Y-%m-%dT%H:%M:%fZ','now'))")


class Base(DeclarativeBase):
    pass


# Import all model modules so Base.metadata is fully populated for create_all().
from erp_jobs.db.models import bulk_requests as _bulk_requests  # noqa: F401,E402
from erp_jobs.db.models import job_dependencies as _job_dependencies  # noqa: F401,E402
from erp_jobs.db.models import job_executions as _job_executions  # noqa: F401,E402
from erp_jobs.db.models import job_locks as _job_locks  # noqa: F401,E402
from erp_jobs.db.models import job_metrics as _job_metrics  # noqa: F401,E402
from erp_jobs.db.models import job_queues as _job_queues  # noqa: F401,E402
from erp_jobs.db.models import job_schedules as _job_schedules  # noqa: F401,E402
from erp_jobs.db.models import job_templates as _job_templates  # noqa: F401,E402
from erp_jobs.db.models import job_workers as _job_workers  # noqa: F401,E402
from erp_jobs.db.models import jobs as _jobs  # noqa: F401,E402
