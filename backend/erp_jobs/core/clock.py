from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Protocol

from erp_jobs.core.time import as_utc


class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock:
    """Deterministic clock for tests: time only moves when advanced."""

    def __init__(self, start: datetime) -> None:
        self._now = as_utc(start)
        self._mono = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> datetime:
        if seconds < 0:
            raise ValueError("a manual clock only moves forward")
        self._now = self._now + timedelta(seconds=seconds)
        self._mono += float(seconds)
        return self._now

    def set(self, dt: datetime) -> datetime:
        target = as_utc(dt)
        if target < self._now:
            raise ValueError("a manual clock only moves forward")
        return self.advance((target - self._now).total_seconds())
