"""Persisted data model for loops.

The state document is written with camelCase keys so it stays readable by
the dashboard and other collaborators that consume it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(UTC)


class LoopStatus(str, Enum):
    """Loop lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


class ExitReason(str, Enum):
    """Why a loop run ended."""

    COMPLETION_SIGNAL = "completion_signal"  # completion marker printed
    EXIT_SIGNAL = "exit_signal"  # EXIT_SIGNAL: true in status block
    PROJECT_COMPLETE = "project_complete"  # exit signal + completion indicators
    TEST_SATURATION = "test_saturation"  # consecutive test-only iterations
    CIRCUIT_BREAKER = "circuit_breaker"
    MAX_ITERATIONS = "max_iterations"
    USER_STOPPED = "user_stopped"
    MANUAL_COMPLETE = "manual_complete"
    ERROR = "error"


class LogType(str, Enum):
    AGENT = "agent"
    OPERATOR = "operator"
    SYSTEM = "system"
    ERROR = "error"


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AcceptanceCriterion(_Model):
    text: str
    completed: bool = False
    completed_by: Literal["agent", "operator"] | None = None
    completed_at: datetime | None = None


class Issue(_Model):
    """Snapshot of the external work item a loop works on."""

    url: str = ""
    title: str
    body: str = ""
    number: int | None = None
    repo: str | None = None
    acceptance_criteria: list[AcceptanceCriterion] = Field(default_factory=list)

    def remaining_criteria(self) -> list[str]:
        return [c.text for c in self.acceptance_criteria if not c.completed]

    def all_criteria_complete(self) -> bool:
        return all(c.completed for c in self.acceptance_criteria)


class Loop(_Model):
    """One supervised agent session."""

    id: str
    issue: Issue
    agent: str
    status: LoopStatus = LoopStatus.QUEUED
    skip_permissions: bool = False
    hidden: bool = False
    working_dir: str
    pid: int | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    iteration: int = 0
    max_iterations: int = 100
    error: str | None = None
    exit_reason: str | None = None
    paused_session_id: str | None = None
    paused_at: datetime | None = None
    paused_from_previous_session: bool | None = None
    parent_loop_id: str | None = None
    is_review_loop: bool | None = None
    review_loop_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (LoopStatus.COMPLETED, LoopStatus.ERROR, LoopStatus.STOPPED)


class AppState(_Model):
    """Root of the persisted state document."""

    loops: list[Loop] = Field(default_factory=list)
    active_loop_id: str | None = None


class LogEntry(_Model):
    timestamp: datetime = Field(default_factory=utcnow)
    loop_id: str
    type: LogType
    content: str
