from __future__ import annotations

import random

import pytest

from erp_jobs.jobs.backoff import MAX_BACKOFF_S, backoff_seconds, retry_delay
from erp_jobs.jobs.errors import ErrorKind


class _FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__(0)
        self._value = value

    def uniform(self, a: float, b: float) -> float:
        return a + (b - a) * self._value


def test_backoff_doubles_per_attempt() -> None:
    mid = _FixedRandom(0.5)
    assert backoff_seconds(1, base_delay_s=60, rng=mid) == pytest.approx(60.0)
    assert backoff_seconds(2, base_delay_s=60, rng=mid) == pytest.approx(120.0)
    assert backoff_seconds(3, base_delay_s=60, rng=mid) == pytest.approx(240.0)


def test_backoff_is_capped_before_jitter() -> None:
    assert backoff_seconds(30, base_delay_s=60, rng=_FixedRandom(1.0)) == pytest.approx(MAX_BACKOFF_S * 1.2)
    assert backoff_seconds(500, base_delay_s=60, rng=_FixedRandom(0.0)) == pytest.approx(MAX_BACKOFF_S * 0.8)


def test_backoff_jitter_stays_in_band() -> None:
    rng = random.Random(7)
    for _ in range(200):
        delay = backoff_seconds(2, base_delay_s=10, rng=rng)
        assert 16.0 <= delay <= 24.0


def test_backoff_zero_for_non_positive_attempt() -> None:
    assert backoff_seconds(0, base_delay_s=60) == 0.0


def test_retry_delay_stops_after_max_retries() -> None:
    rng = _FixedRandom(0.5)
    assert retry_delay(attempt=3, max_retries=3, base_delay_s=1, kind=ErrorKind.RETRYABLE, rng=rng) == pytest.approx(4.0)
    assert retry_delay(attempt=4, max_retries=3, base_delay_s=1, kind=ErrorKind.RETRYABLE, rng=rng) is None


@pytest.mark.parametrize("kind", [ErrorKind.NON_RETRYABLE, ErrorKind.CANCELLED])
def test_retry_delay_never_retries_final_kinds(kind: ErrorKind) -> None:
    assert retry_delay(attempt=1, max_retries=5, base_delay_s=1, kind=kind) is None


@pytest.mark.parametrize("kind", [ErrorKind.TIMEOUT, ErrorKind.LEASE_LOST])
def test_retry_delay_retries_timeouts_and_lost_leases(kind: ErrorKind) -> None:
    assert retry_delay(attempt=1, max_retries=1, base_delay_s=5, kind=kind, rng=_FixedRandom(0.5)) == pytest.approx(5.0)


def test_zero_max_retries_fails_on_first_error() -> None:
    assert retry_delay(attempt=1, max_retries=0, base_delay_s=5, kind=ErrorKind.RETRYABLE) is None
