"""Retry/backoff scheduling shared by queue jobs and webhook deliveries.

Strategy: ``base * 2**attempt`` milliseconds, capped (1 hour by default).
With a 1s base: 1s, 2s, 4s, 8s, ... 3600s.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

DEFAULT_MAX_DELAY_MS = 60 * 60 * 1000

# 4xx responses that still deserve another try
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff base for one job."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a job after a failed attempt."""

    retry: bool
    delay_ms: int = 0
    scheduled_at: datetime | None = None
    reason: str = ""


def next_delay(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
) -> int:
    """Calculate exponential backoff in milliseconds.

    Args:
        attempt: Number of previous retries (0-indexed)
        base_delay_ms: Delay before the first retry
        max_delay_ms: Upper bound on the returned delay

    Returns:
        Milliseconds to wait before the next attempt
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    if base_delay_ms <= 0:
        return 0
    # Stop doubling once past the cap so huge attempt numbers stay cheap
    delay = base_delay_ms
    for _ in range(attempt):
        delay *= 2
        if delay >= max_delay_ms:
            return max_delay_ms
    return min(delay, max_delay_ms)


def decide(
    attempts: int,
    policy: RetryPolicy,
    retryable: bool = True,
    now: datetime | None = None,
) -> RetryDecision:
    """Decide between re-scheduling and terminal failure.

    Args:
        attempts: Runs made so far, including the one that just failed
        policy: Retry budget and backoff base
        retryable: False for permanent failures (skips the budget check)
        now: Reference time for the new schedule

    Returns:
        RetryDecision with the next scheduled time when retrying
    """
    if not retryable:
        return RetryDecision(retry=False, reason="permanent failure")
    if attempts >= policy.max_attempts:
        return RetryDecision(retry=False, reason="retries exhausted")

    delay_ms = next_delay(max(attempts - 1, 0), policy.base_delay_ms, policy.max_delay_ms)
    now = now or datetime.utcnow()
    return RetryDecision(
        retry=True,
        delay_ms=delay_ms,
        scheduled_at=now + timedelta(milliseconds=delay_ms),
        reason="scheduled retry",
    )


def is_retryable_status(status_code: int | None, retry_client_errors: bool = False) -> bool:
    """Classify a non-2xx HTTP status.

    ``None`` means the request never produced a response (network error,
    timeout) and is always retryable.
    """
    if status_code is None:
        return True
    if 400 <= status_code < 500:
        return retry_client_errors or status_code in RETRYABLE_CLIENT_STATUSES
    return True
