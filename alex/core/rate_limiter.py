"""Fixed-window hourly rate limiter for agent invocations.

``check_rate_limit`` only reads; ``record_call`` is the only mutator, so
callers can inspect the budget without consuming it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

HOUR_SECONDS = 60 * 60
DEFAULT_CALLS_PER_HOUR = 100

# Returned by check_rate_limit when the window budget is used up
RATE_LIMITED = -1


@dataclass
class RateLimiterState:
    """Calls recorded in the current window."""

    call_count: int = 0
    window_start: float = field(default_factory=time.time)
    calls_per_hour: int = DEFAULT_CALLS_PER_HOUR


def create_rate_limiter(calls_per_hour: int | None = None) -> RateLimiterState:
    return RateLimiterState(
        call_count=0,
        window_start=time.time(),
        calls_per_hour=calls_per_hour if calls_per_hour is not None else DEFAULT_CALLS_PER_HOUR,
    )


def _window_expired(rl: RateLimiterState, now: float) -> bool:
    return now - rl.window_start >= HOUR_SECONDS


def check_rate_limit(rl: RateLimiterState, now: float | None = None) -> int:
    """Return the calls still available, or ``RATE_LIMITED`` when exhausted.

    An expired window reports the full budget without being rolled.
    """
    now = time.time() if now is None else now
    if _window_expired(rl, now):
        return rl.calls_per_hour

    remaining = rl.calls_per_hour - rl.call_count
    return remaining if remaining > 0 else RATE_LIMITED


def record_call(rl: RateLimiterState, now: float | None = None) -> RateLimiterState:
    """Count one call, starting a new window if the current one expired."""
    now = time.time() if now is None else now
    if _window_expired(rl, now):
        return RateLimiterState(call_count=1, window_start=now, calls_per_hour=rl.calls_per_hour)

    return RateLimiterState(
        call_count=rl.call_count + 1,
        window_start=rl.window_start,
        calls_per_hour=rl.calls_per_hour,
    )


def get_time_until_reset(rl: RateLimiterState, now: float | None = None) -> float:
    """Seconds until the current window ends (never negative)."""
    now = time.time() if now is None else now
    return max(0.0, HOUR_SECONDS - (now - rl.window_start))


def format_time_until_reset(rl: RateLimiterState, now: float | None = None) -> str:
    total_seconds = int(get_time_until_reset(rl, now))
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def get_status_summary(rl: RateLimiterState, now: float | None = None) -> str:
    remaining = check_rate_limit(rl, now)
    reset_in = format_time_until_reset(rl, now)

    if remaining < 0:
        return f"Rate limited! Resets in {reset_in}"

    return f"{remaining}/{rl.calls_per_hour} calls remaining (resets in {reset_in})"


async def wait_for_rate_limit(rl: RateLimiterState) -> None:
    """Sleep until the current window resets."""
    wait_time = get_time_until_reset(rl)
    if wait_time > 0:
        logger.info(f"Rate limit reached, waiting {format_time_until_reset(rl)}")
        await asyncio.sleep(wait_time)
