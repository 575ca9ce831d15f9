"""
Delay schedules shared by the readiness poll and the sync engine.

All functions are pure and non-decreasing in their attempt argument.
"""


def ready_poll_delay(attempt: int, base: float = 2.0, factor: float = 1.5, cap: float = 15.0) -> float:
    """Delay before readiness poll ``attempt`` (0-based): base * factor**attempt, capped."""
    return min(base * (factor ** max(attempt, 0)), cap)


def collection_delay(call_number: int, base: float = 3.0, step: float = 0.2, ceiling: float = 6.0) -> float:
    """Normal pause between group-list calls, growing mildly with the call count."""
    return min(base + max(call_number, 0) * step, ceiling)


def rate_limit_delay(consecutive_failures: int, base: float = 8.0, factor: float = 1.5, ceiling: float = 60.0) -> float:
    """Pause after a 429/5xx. ``consecutive_failures`` counts from 1."""
    return min(base * (factor ** max(consecutive_failures - 1, 0)), ceiling)
