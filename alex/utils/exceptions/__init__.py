from .base import AlexError
from .config import ConfigError, ConfigLoadError, ValidationError
from .loops import (
    LoopError,
    LoopNotFoundError,
    InvalidTransitionError,
    NoActiveProcessError,
    AdapterUnavailableError,
    ProcessError,
)
from .persistence import PersistenceError

__all__ = [
    "AlexError",
    "ConfigError",
    "ConfigLoadError",
    "ValidationError",
    "LoopError",
    "LoopNotFoundError",
    "InvalidTransitionError",
    "NoActiveProcessError",
    "AdapterUnavailableError",
    "ProcessError",
    "PersistenceError",
]
