"""Circuit breaker that halts loops which stop making progress.

States:
    CLOSED: normal operation, progress is being made
    HALF_OPEN: warning, two or more iterations without progress
    OPEN: halted until an operator resets it

All functions are pure: they return a new state and never mutate their input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from alex.core.analyzer import AnalysisResult, are_errors_repeating
from alex.core.types import utcnow

logger = logging.getLogger(__name__)

HALF_OPEN_NO_PROGRESS = 2


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    HALF_OPEN = "half_open"  # No progress, watching
    OPEN = "open"  # Halted


@dataclass(frozen=True)
class CircuitBreakerThresholds:
    """Limits that open the breaker."""

    no_progress: int = 3
    same_error: int = 5
    output_decline: float = 0.7


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    consecutive_no_progress: int = 0
    consecutive_same_error: int = 0
    consecutive_test_only: int = 0
    last_errors: list[str] = field(default_factory=list)
    last_output_length: int = 0
    open_reason: str | None = None
    opened_at: datetime | None = None


def create_circuit_breaker() -> CircuitBreakerState:
    return CircuitBreakerState()


def record_iteration(
    cb: CircuitBreakerState,
    analysis: AnalysisResult,
    thresholds: CircuitBreakerThresholds | None = None,
) -> CircuitBreakerState:
    """Fold one iteration's analysis into the breaker.

    Args:
        cb: Current breaker state.
        analysis: Analysis of the iteration's output.
        thresholds: Opening limits, defaults when omitted.

    Returns:
        The new breaker state.
    """
    thresholds = thresholds or CircuitBreakerThresholds()
    new_cb = replace(cb, last_errors=list(cb.last_errors))

    if analysis.has_progress or analysis.files_modified > 0:
        new_cb.consecutive_no_progress = 0
        new_cb.consecutive_same_error = 0
        if new_cb.state == CircuitState.HALF_OPEN:
            new_cb.state = CircuitState.CLOSED
            new_cb.open_reason = None
            new_cb.opened_at = None
    else:
        new_cb.consecutive_no_progress += 1

    if analysis.is_test_only:
        new_cb.consecutive_test_only += 1
    else:
        new_cb.consecutive_test_only = 0

    if analysis.errors:
        if are_errors_repeating(analysis.errors, cb.last_errors):
            new_cb.consecutive_same_error += 1
        else:
            new_cb.consecutive_same_error = 1
        new_cb.last_errors = list(analysis.errors)
    else:
        new_cb.consecutive_same_error = 0
        new_cb.last_errors = []

    output_decline = 0.0
    if cb.last_output_length > 0:
        output_decline = 1 - (analysis.output_length / cb.last_output_length)
    new_cb.last_output_length = analysis.output_length

    _transition(new_cb, output_decline, thresholds)
    if new_cb.state != cb.state:
        logger.info(f"Circuit breaker {cb.state.value} -> {new_cb.state.value}")
    return new_cb


def _transition(
    cb: CircuitBreakerState,
    output_decline: float,
    thresholds: CircuitBreakerThresholds,
) -> None:
    if cb.state == CircuitState.OPEN:
        return

    reason = None
    if cb.consecutive_no_progress >= thresholds.no_progress:
        reason = f"No progress for {cb.consecutive_no_progress} iterations"
    elif cb.consecutive_same_error >= thresholds.same_error:
        reason = f"Same errors for {cb.consecutive_same_error} iterations"
    elif output_decline >= thresholds.output_decline:
        reason = f"Output declined by {round(output_decline * 100)}%"

    if reason:
        cb.state = CircuitState.OPEN
        cb.open_reason = reason
        cb.opened_at = utcnow()
        logger.warning(f"Circuit breaker OPEN: {reason}")
    elif cb.consecutive_no_progress >= HALF_OPEN_NO_PROGRESS:
        cb.state = CircuitState.HALF_OPEN
    else:
        cb.state = CircuitState.CLOSED


def should_halt(cb: CircuitBreakerState) -> bool:
    return cb.state == CircuitState.OPEN


def get_halt_reason(cb: CircuitBreakerState) -> str:
    return cb.open_reason or "Circuit breaker tripped"


def reset_circuit_breaker(cb: CircuitBreakerState) -> CircuitBreakerState:
    """Return a closed breaker with cleared counters.

    The last output length is kept so decline detection continues.
    """
    return replace(
        cb,
        state=CircuitState.CLOSED,
        consecutive_no_progress=0,
        consecutive_same_error=0,
        consecutive_test_only=0,
        last_errors=[],
        open_reason=None,
        opened_at=None,
    )


def get_status_summary(cb: CircuitBreakerState) -> str:
    parts = [
        f"state={cb.state.value}",
        f"no_progress={cb.consecutive_no_progress}",
        f"same_error={cb.consecutive_same_error}",
        f"test_only={cb.consecutive_test_only}",
    ]
    if cb.open_reason:
        parts.append(f'reason="{cb.open_reason}"')
    return ", ".join(parts)
