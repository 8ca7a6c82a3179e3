"""Next-fire computation for schedule descriptors.

Pure functions only: every result depends on the descriptor and the anchor
instant. Local wall-clock times are resolved in the schedule's IANA zone with
``fold=0``, so a time skipped by a DST gap keeps the pre-transition offset
(02:30 on a spring-forward night fires at 03:30 local) and a repeated time
fires once, at its earlier UTC instant.
"""

from __future__ import annotations

import calendar as _calendar
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from erp_jobs.core.time import as_utc
from erp_jobs.jobs.cron import CronExpression
from erp_jobs.jobs.errors import InvalidExpression, Unbounded

# Local times shift by at most a DST gap; scanning this far either side of a
# candidate is enough to keep results ordered in UTC.
_DST_SLACK = timedelta(hours=3)
CRON_HORIZON_DAYS = 8 * 366
CALENDAR_HORIZON_DAYS = 366 + 7

_DOW_NAMES = {"SUN": 0, "MON": 1, "TUE": 2, "WED": 3, "THU": 4, "FRI": 5, "SAT": 6}


class ScheduleKind(str, Enum):
    CRON = "cron"
    INTERVAL = "interval"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    SPECIFIC_TIMES = "specific_times"


@dataclass(frozen=True, slots=True)
class ScheduleSpec:
    kind: ScheduleKind
    timezone: str = "UTC"
    cron_expression: str | None = None
    interval_seconds: int | None = None
    # "HH:MM" for daily/weekly/monthly, "DOW HH:MM" for specific_times.
    times: tuple[str, ...] = field(default_factory=tuple)
    # Bit 0 is Sunday, bit 6 is Saturday.
    run_on_days: int | None = None
    day_of_month: int | None = None
    start: datetime | None = None
    end: datetime | None = None


def load_zone(name: str) -> ZoneInfo:
    key = (name or "").strip() or "UTC"
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidExpression(f"unknown timezone: {name!r}") from exc


def cron_dow(day: date) -> int:
    return (day.weekday() + 1) % 7


def parse_hhmm(raw: str) -> time:
    text = (raw or "").strip()
    parts = text.split(":")
    if len(parts) not in {2, 3} or not all(p.isdigit() for p in parts):
        raise InvalidExpression(f"invalid time of day: {raw!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    if hour > 23 or minute > 59 or second > 59:
        raise InvalidExpression(f"invalid time of day: {raw!r}")
    return time(hour, minute, second)


def parse_day_time(raw: str) -> tuple[int, time]:
    parts = (raw or "").split()
    if len(parts) != 2:
        raise InvalidExpression(f"specific time needs 'DOW HH:MM': {raw!r}")
    day_raw = parts[0].strip().upper()
    if day_raw[:3] in _DOW_NAMES:
        dow = _DOW_NAMES[day_raw[:3]]
    elif day_raw.isdigit() and int(day_raw) <= 7:
        dow = int(day_raw) % 7
    else:
        raise InvalidExpression(f"invalid day of week: {parts[0]!r}")
    return dow, parse_hhmm(parts[1])


def resolve_local(naive: datetime, tz: ZoneInfo) -> datetime:
    return naive.replace(tzinfo=tz, fold=0).astimezone(timezone.utc)


def _scan(
    *,
    tz: ZoneInfo,
    anchor: datetime,
    horizon_days: int,
    day_matches: Callable[[date], bool],
    times_for_day: Callable[[date], Iterable[time]],
) -> datetime | None:
    start_naive = anchor.astimezone(tz).replace(tzinfo=None) - _DST_SLACK
    day = start_naive.date()
    best: datetime | None = None
    best_limit: datetime | None = None

    for _ in range(horizon_days + 2):
        if best_limit is not None and datetime.combine(day, time.min) > best_limit:
            return best
        if day_matches(day):
            for t in times_for_day(day):
                naive = datetime.combine(day, t)
                if naive < start_naive:
                    continue
                if best_limit is not None and naive > best_limit:
                    return best
                candidate = resolve_local(naive, tz)
                if candidate > anchor and (best is None or candidate < best):
                    best = candidate
                    best_limit = naive + _DST_SLACK
        day += timedelta(days=1)
    return best


def _cron_times(expr: CronExpression) -> Callable[[date], Iterator[time]]:
    def _times(_day: date) -> Iterator[time]:
        for h in expr.hours:
            for m in expr.minutes:
                for s in expr.seconds:
                    yield time(h, m, s)

    return _times


def _sorted_times(values: Sequence[str]) -> tuple[time, ...]:
    parsed = [parse_hhmm(v) for v in values] or [time(0, 0)]
    return tuple(sorted(set(parsed)))


def _days_mask(spec: ScheduleSpec, tz: ZoneInfo) -> int:
    if spec.run_on_days:
        return int(spec.run_on_days) & 0x7F
    if spec.kind is ScheduleKind.WEEKLY:
        if spec.start is not None:
            return 1 << cron_dow(spec.start.astimezone(tz).date())
        return 1 << 1
    return 0x7F


def validate_spec(spec: ScheduleSpec) -> None:
    """Raise ``InvalidExpression`` if the descriptor cannot produce fire times."""
    load_zone(spec.timezone)
    if spec.kind is ScheduleKind.CRON:
        CronExpression.parse(spec.cron_expression or "")
    elif spec.kind is ScheduleKind.INTERVAL:
        if not spec.interval_seconds or int(spec.interval_seconds) <= 0:
            raise InvalidExpression("interval must be a positive number of seconds")
    elif spec.kind is ScheduleKind.SPECIFIC_TIMES:
        if not spec.times:
            raise InvalidExpression("specific_times needs at least one 'DOW HH:MM' entry")
        for entry in spec.times:
            parse_day_time(entry)
    else:
        _sorted_times(spec.times)
        if spec.day_of_month is not None and not 1 <= int(spec.day_of_month) <= 31:
            raise InvalidExpression(f"invalid day of month: {spec.day_of_month}")
    if spec.start is not None and spec.end is not None and as_utc(spec.end) < as_utc(spec.start):
        raise InvalidExpression("end is before start")


def next_fire(spec: ScheduleSpec, anchor: datetime) -> datetime | None:
    """First fire instant strictly after ``anchor``, or ``None`` if the schedule has run out.

    Raises ``Unbounded`` when ``anchor`` is already at or past ``spec.end``.
    """
    anchor = as_utc(anchor)
    end = as_utc(spec.end) if spec.end is not None else None
    start = as_utc(spec.start) if spec.start is not None else None
    if end is not None and anchor >= end:
        raise Unbounded(f"anchor {anchor.isoformat()} is past the schedule end")

    tz = load_zone(spec.timezone)
    effective = anchor
    if start is not None and anchor < start:
        effective = start - timedelta(microseconds=1)

    result: datetime | None
    if spec.kind is ScheduleKind.INTERVAL:
        result = _next_interval(spec, anchor=anchor, start=start)
    elif spec.kind is ScheduleKind.CRON:
        expr = CronExpression.parse(spec.cron_expression or "")
        result = _scan(
            tz=tz,
            anchor=effective,
            horizon_days=CRON_HORIZON_DAYS,
            day_matches=expr.day_matches,
            times_for_day=_cron_times(expr),
        )
    elif spec.kind is ScheduleKind.SPECIFIC_TIMES:
        slots: dict[int, list[time]] = {}
        for entry in spec.times:
            dow, t = parse_day_time(entry)
            slots.setdefault(dow, []).append(t)
        by_dow = {dow: sorted(set(ts)) for dow, ts in slots.items()}
        result = _scan(
            tz=tz,
            anchor=effective,
            horizon_days=CALENDAR_HORIZON_DAYS,
            day_matches=lambda d: cron_dow(d) in by_dow,
            times_for_day=lambda d: by_dow.get(cron_dow(d), ()),
        )
    else:
        times = _sorted_times(spec.times)
        mask = _days_mask(spec, tz)

        if spec.kind is ScheduleKind.MONTHLY:
            dom = int(spec.day_of_month or (spec.start.astimezone(tz).day if spec.start is not None else 1))

            def _matches(d: date) -> bool:
                last = _calendar.monthrange(d.year, d.month)[1]
                return d.day == min(dom, last) and bool(mask & (1 << cron_dow(d)))

        else:

            def _matches(d: date) -> bool:
                return bool(mask & (1 << cron_dow(d)))

        result = _scan(
            tz=tz,
            anchor=effective,
            horizon_days=CALENDAR_HORIZON_DAYS,
            day_matches=_matches,
            times_for_day=lambda _d: times,
        )

    if result is None:
        return None
    if end is not None and result > end:
        return None
    return result


def _next_interval(spec: ScheduleSpec, *, anchor: datetime, start: datetime | None) -> datetime:
    seconds = int(spec.interval_seconds or 0)
    if seconds <= 0:
        raise InvalidExpression("interval must be a positive number of seconds")
    step = timedelta(seconds=seconds)
    if start is None:
        return anchor + step
    if anchor < start:
        return start
    k = int((anchor - start) // step) + 1
    return start + k * step
