"""alex - runs AI coding agent CLIs in supervised iteration loops."""

__version__ = "0.3.0"

from alex.adapters import AdapterLoader, AdapterRegistry, AdapterService
from alex.config import AlexConfig, load_config
from alex.core import EventBus, EventType, Issue, LogStore, Loop, LoopStatus, StateStore
from alex.core.loops import LoopManager

__all__ = [
    "__version__",
    "AdapterLoader",
    "AdapterRegistry",
    "AdapterService",
    "AlexConfig",
    "EventBus",
    "EventType",
    "Issue",
    "LogStore",
    "Loop",
    "LoopManager",
    "LoopStatus",
    "StateStore",
    "load_config",
]
