from typing import Any

from .base import AlexError, merge_details


class LoopError(AlexError):
    """Loop lifecycle errors."""

    def __init__(
        self,
        message: str,
        loop_id: str | None = None,
        code: str = "LOOP_ERROR",
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, code=code, details=merge_details(details, loop_id=loop_id), **kwargs)
        self.loop_id = loop_id


class LoopNotFoundError(LoopError):
    """Loop id is not present in the state document."""

    def __init__(self, loop_id: str, **kwargs: Any) -> None:
        super().__init__(f"Loop not found: {loop_id}", loop_id, code="LOOP_NOT_FOUND", **kwargs)


class InvalidTransitionError(LoopError):
    """Operation is not valid for the loop's current status."""

    def __init__(self, loop_id: str, status: str, operation: str, **kwargs: Any) -> None:
        super().__init__(
            f"Cannot {operation} loop {loop_id} in status '{status}'",
            loop_id,
            code="INVALID_TRANSITION",
            details={"status": status, "operation": operation},
            **kwargs,
        )
        self.status = status
        self.operation = operation


class NoActiveProcessError(LoopError):
    """Control operation against a loop with no tracked process."""

    def __init__(self, loop_id: str, **kwargs: Any) -> None:
        super().__init__(f"No running process for loop: {loop_id}", loop_id, code="NO_ACTIVE_PROCESS", **kwargs)


class AdapterUnavailableError(LoopError):
    """Adapter is unregistered or its availability check failed."""

    def __init__(self, agent: str, reason: str, loop_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(
            f"Agent '{agent}' unavailable: {reason}",
            loop_id,
            code="ADAPTER_UNAVAILABLE",
            details={"agent": agent},
            **kwargs,
        )
        self.agent = agent


class ProcessError(LoopError):
    """Agent process failed to spawn or died abnormally."""

    def __init__(
        self,
        message: str,
        loop_id: str | None = None,
        exit_code: int | None = None,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            loop_id,
            code="PROCESS_ERROR",
            details=merge_details(details, exit_code=exit_code),
            **kwargs,
        )
        self.exit_code = exit_code
