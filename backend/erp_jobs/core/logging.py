from __future__ import annotations

import logging
from typing import Any

from erp_jobs.core.redact import redact_any

_STD_RECORD_KEYS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class RedactFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            record.msg = redact_any(record.getMessage())
            record.args = ()
            for key, value in list(record.__dict__.items()):
                if key.startswith("_") or key in _STD_RECORD_KEYS:
                    continue
                record.__dict__[key] = redact_any(value)
        except Exception:
            pass
        return True


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format="%(levelname)s %(name)s %(message)s")
    root = logging.getLogger()
    if not any(isinstance(f, RedactFilter) for f in root.filters):
        root.addFilter(RedactFilter())
    for handler in root.handlers:
        if not any(isinstance(f, RedactFilter) for f in handler.filters):
            handler.addFilter(RedactFilter())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class JobLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the job and execution it belongs to."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = self.extra or {}
        return f"job={extra.get('job_id')} exec={extra.get('execution_number')} {msg}", kwargs


def job_logger(name: str, *, job_id: str, execution_number: int) -> JobLoggerAdapter:
    return JobLoggerAdapter(logging.getLogger(name), {"job_id": job_id, "execution_number": execution_number})
