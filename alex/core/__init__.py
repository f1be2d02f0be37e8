from alex.core.events import Event, EventBus, EventType
from alex.core.logs import LogStore
from alex.core.state import StateStore, generate_loop_id
from alex.core.types import (
    AcceptanceCriterion,
    AppState,
    ExitReason,
    Issue,
    LogEntry,
    LogType,
    Loop,
    LoopStatus,
)

__all__ = [
    "AcceptanceCriterion",
    "AppState",
    "Event",
    "EventBus",
    "EventType",
    "ExitReason",
    "Issue",
    "LogEntry",
    "LogStore",
    "LogType",
    "Loop",
    "LoopStatus",
    "StateStore",
    "generate_loop_id",
]
