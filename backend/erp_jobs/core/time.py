from __future__ import annotations

from datetime import datetime, timezone


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_utc_ms(dt: datetime | None = None) -> str:
    dt = as_utc(dt or datetime.now(timezone.utc))
    ms = dt.microsecond // 1000
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms:03d}Z"


def parse_iso_utc(value: str) -> datetime:
    raw = (value or "").strip()
    if not raw:
        raise ValueError("timestamp is required")
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(raw))


def ms_between(start: datetime, end: datetime) -> int:
    return max(0, int(round((as_utc(end) - as_utc(start)).total_seconds() * 1000)))
