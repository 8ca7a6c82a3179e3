from __future__ import annotations

import random

from erp_jobs.jobs.errors import ErrorKind

MAX_BACKOFF_S = 3600.0
JITTER_LOW = 0.8
JITTER_HIGH = 1.2


def backoff_seconds(attempt: int, *, base_delay_s: float, rng: random.Random | None = None) -> float:
    """Delay before retrying after the ``attempt``-th failure (1-based).

    ``min(base * 2**(attempt-1), 3600) * U(0.8, 1.2)``.
    """
    attempt_i = int(attempt)
    if attempt_i <= 0:
        return 0.0
    base = max(0.0, float(base_delay_s))
    # Cap the exponent so very large attempt counts do not overflow the float.
    raw = min(base * (2 ** min(attempt_i - 1, 32)), MAX_BACKOFF_S)
    rng = rng or random
    return raw * rng.uniform(JITTER_LOW, JITTER_HIGH)


def retry_delay(
    *,
    attempt: int,
    max_retries: int,
    base_delay_s: float,
    kind: ErrorKind,
    rng: random.Random | None = None,
) -> float | None:
    """Seconds until the next attempt, or ``None`` when the job should give up."""
    if kind in {ErrorKind.NON_RETRYABLE, ErrorKind.CANCELLED}:
        return None
    if int(attempt) > int(max_retries):
        return None
    return backoff_seconds(attempt, base_delay_s=base_delay_s, rng=rng)
