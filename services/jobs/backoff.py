"""Exponential retry delay shared by extraction jobs and submissions."""

from datetime import datetime, timedelta


def compute_backoff(
    retry_count: int, base_seconds: float = 2.0, max_seconds: float = 30.0
) -> float:
    """Delay before the next attempt: 2s, 4s, 8s, ... capped at ``max_seconds``.

    Args:
        retry_count: Retries already performed (0 for the first retry)
        base_seconds: Delay of the first retry
        max_seconds: Upper bound for any delay

    Returns:
        Delay in seconds
    """
    return min(base_seconds * (2 ** max(retry_count, 0)), max_seconds)


def next_attempt_at(now: datetime, delay_seconds: float) -> datetime:
    return now + timedelta(seconds=delay_seconds)
