from typing import Any

from .base import AlexError, merge_details


class PersistenceError(AlexError):
    """State document or log file could not be read or written."""

    def __init__(
        self,
        message: str,
        path: str | None = None,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            code="PERSISTENCE_ERROR",
            details=merge_details(details, path=path),
            retryable=True,
            **kwargs,
        )
        self.path = path
