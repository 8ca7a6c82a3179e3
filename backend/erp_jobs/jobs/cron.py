from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from croniter import croniter

from erp_jobs.jobs.errors import InvalidExpression

MACROS: dict[str, str] = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# (min, max) per field in croniter's order: minute hour dom month dow second.
_RANGES = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 6), (0, 59))


def _values(expanded: list, index: int) -> frozenset[int]:
    lo, hi = _RANGES[index]
    items = expanded[index]
    if items == ["*"]:
        return frozenset(range(lo, hi + 1))
    out: set[int] = set()
    for item in items:
        # croniter extensions (L, #, H) expand to markers the calendar cannot evaluate.
        if not isinstance(item, int):
            raise InvalidExpression(f"unsupported cron token: {item!r}")
        out.add(item % 7 if index == 4 else item)
    return frozenset(out)


@dataclass(frozen=True, slots=True)
class CronExpression:
    """A parsed 5- or 6-field cron expression with Vixie day matching.

    Six fields put seconds first: ``sec min hour dom month dow``. Field syntax
    (ranges, steps, lists, month and weekday names) is expanded by croniter.
    """

    source: str
    seconds: tuple[int, ...]
    minutes: tuple[int, ...]
    hours: tuple[int, ...]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    dom_star: bool
    dow_star: bool

    @classmethod
    def parse(cls, expression: str) -> CronExpression:
        source = (expression or "").strip()
        if not source:
            raise InvalidExpression("cron expression is required")
        text = MACROS.get(source.lower(), source)
        if text.startswith("@"):
            raise InvalidExpression(f"unknown cron macro: {source!r}")

        fields = [f.replace("?", "*") for f in text.split()]
        if len(fields) == 5:
            fields = ["0", *fields]
        elif len(fields) != 6:
            raise InvalidExpression(f"cron expression needs 5 or 6 fields, got {len(fields)}")

        sec, minute, hour, dom, month, dow = fields
        try:
            expanded, nth_weekday = croniter.expand(" ".join((minute, hour, dom, month, dow, sec)))
        except ValueError as exc:
            raise InvalidExpression(f"invalid cron expression {source!r}: {exc}") from exc
        if nth_weekday:
            raise InvalidExpression(f"unsupported cron token in {source!r}")

        return cls(
            source=source,
            seconds=tuple(sorted(_values(expanded, 5))),
            minutes=tuple(sorted(_values(expanded, 0))),
            hours=tuple(sorted(_values(expanded, 1))),
            days_of_month=_values(expanded, 2),
            months=_values(expanded, 3),
            days_of_week=_values(expanded, 4),
            # Vixie cron decides the day conjunction from the literal field text.
            dom_star=dom.startswith("*"),
            dow_star=dow.startswith("*"),
        )

    def day_matches(self, day: date) -> bool:
        if day.month not in self.months:
            return False
        dom_match = day.day in self.days_of_month
        dow_match = ((day.weekday() + 1) % 7) in self.days_of_week
        if self.dom_star or self.dow_star:
            return dom_match and dow_match
        return dom_match or dow_match

    def matches(self, local: datetime) -> bool:
        return (
            self.day_matches(local.date())
            and local.hour in self.hours
            and local.minute in self.minutes
            and local.second in self.seconds
        )
