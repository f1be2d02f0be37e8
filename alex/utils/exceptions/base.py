"""Root of the alex error hierarchy.

Errors carry a stable ``code`` for callers that branch on the kind of
failure, ``details`` that end up in logs and loop state, and a short
``trace_id`` that ties a CLI message to the diagnostic log line.
"""

from __future__ import annotations

import secrets
from typing import Any


def merge_details(details: dict[str, Any] | None, **values: Any) -> dict[str, Any]:
    """Copy ``details`` and add every value that is not None."""
    merged = dict(details or {})
    merged.update({key: value for key, value in values.items() if value is not None})
    return merged


class AlexError(Exception):
    """Base exception for all alex errors.

    Args:
        message: Human-readable summary shown to the operator.
        code: Stable identifier such as ``LOOP_NOT_FOUND``.
        details: Context such as the loop id or the offending file.
        retryable: Whether repeating the operation may succeed.
        trace_id: Correlation id; generated when omitted.
        cause: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        code: str = "ALEX_ERROR",
        details: dict[str, Any] | None = None,
        retryable: bool = False,
        trace_id: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = dict(details or {})
        self.retryable = retryable
        self.trace_id = trace_id or secrets.token_hex(4)
        self.cause = cause

    def __str__(self) -> str:
        text = f"[{self.code}] {self.message}"
        if self.details:
            text += " (" + ", ".join(f"{key}={value}" for key, value in self.details.items()) + ")"
        if self.cause is not None:
            text += f" [caused by: {self.cause}]"
        return text

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code!r}, {self.message!r}, trace_id={self.trace_id!r})"

    def to_dict(self) -> dict[str, Any]:
        """Plain representation for JSON logs and event payloads."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
            "trace_id": self.trace_id,
            "cause": None if self.cause is None else str(self.cause),
        }
