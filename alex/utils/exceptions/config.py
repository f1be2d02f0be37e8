from typing import Any

from .base import AlexError, merge_details


class ConfigError(AlexError):
    """Invalid or unreadable engine configuration (``config.toml``, ``ALEX_*``)."""

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        config_file: str | None = None,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            code="CONFIG_ERROR",
            details=merge_details(details, config_key=config_key, config_file=config_file),
            **kwargs,
        )
        self.config_key = config_key
        self.config_file = config_file


class ConfigLoadError(AlexError):
    """An adapter descriptor could not be parsed or validated.

    The loader turns these into load errors; they never escape it.
    """

    def __init__(
        self,
        message: str,
        file: str,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            code="CONFIG_LOAD_ERROR",
            details=merge_details(details, file=file),
            **kwargs,
        )
        self.file = file


class ValidationError(AlexError):
    """Caller input rejected before anything was changed."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any = None,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details=merge_details(details, field=field, value=None if value is None else str(value)),
            **kwargs,
        )
        self.field = field
        self.value = value
