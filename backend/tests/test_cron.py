from __future__ import annotations

from datetime import date, datetime

import pytest

from erp_jobs.jobs.cron import CronExpression
from erp_jobs.jobs.errors import InvalidExpression


def test_five_fields_get_a_zero_seconds_field() -> None:
    expr = CronExpression.parse("*/15 * * * *")
    assert expr.seconds == (0,)
    assert expr.minutes == (0, 15, 30, 45)
    assert expr.hours == tuple(range(24))


def test_six_fields_put_seconds_first() -> None:
    expr = CronExpression.parse("0 30 2 * * *")
    assert expr.seconds == (0,)
    assert expr.minutes == (30,)
    assert expr.hours == (2,)


def test_macros_and_names() -> None:
    assert CronExpression.parse("@daily").hours == (0,)
    assert CronExpression.parse("@hourly").minutes == (0,)
    expr = CronExpression.parse("0 9 * jan-mar mon,fri")
    assert expr.months == frozenset({1, 2, 3})
    assert expr.days_of_week == frozenset({1, 5})


def test_sunday_may_be_written_as_seven() -> None:
    assert CronExpression.parse("0 0 * * 7").days_of_week == frozenset({0})
    assert CronExpression.parse("0 0 * * 5-7").days_of_week == frozenset({5, 6, 0})


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "* * *",
        "61 * * * *",
        "* 24 * * *",
        "0 0 0 * *",
        "0 0 * 13 *",
        "*/0 * * * *",
        "@never",
        "0 0 L * *",
        "0 0 * * 5#3",
    ],
)
def test_invalid_expressions_raise(expression: str) -> None:
    with pytest.raises(InvalidExpression):
        CronExpression.parse(expression)


def test_restricted_day_of_month_and_week_match_either() -> None:
    expr = CronExpression.parse("0 0 13 * 5")
    assert expr.day_matches(date(2025, 6, 13))  # Friday the 13th
    assert expr.day_matches(date(2025, 6, 6))  # any Friday
    assert expr.day_matches(date(2025, 7, 13))  # any 13th
    assert not expr.day_matches(date(2025, 6, 10))


def test_star_day_of_month_requires_day_of_week() -> None:
    expr = CronExpression.parse("0 0 * * 1-5")
    assert expr.day_matches(date(2025, 6, 9))
    assert not expr.day_matches(date(2025, 6, 7))


def test_matches_checks_time_fields() -> None:
    expr = CronExpression.parse("0 30 2 * * *")
    assert expr.matches(datetime(2025, 3, 8, 2, 30, 0))
    assert not expr.matches(datetime(2025, 3, 8, 2, 30, 1))
    assert not expr.matches(datetime(2025, 3, 8, 3, 30, 0))
