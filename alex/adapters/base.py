"""Agent adapter protocol and registry.

An adapter turns a prompt into the argument vector for one agent CLI and knows
how to pick a session id out of that CLI's output so the next iteration can
continue the same conversation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpawnArgs:
    """Executable and arguments, run without a shell."""

    cmd: str
    args: list[str] = field(default_factory=list)

    @property
    def argv(self) -> list[str]:
        return [self.cmd, *self.args]


@runtime_checkable
class AgentAdapter(Protocol):
    """Capabilities every agent adapter provides."""

    type: str
    display_name: str

    def build_spawn_args(
        self,
        prompt: str,
        skip_permissions: bool,
        working_dir: str | None = None,
    ) -> SpawnArgs:
        """Argument vector for a fresh invocation."""
        ...

    def build_continue_args(
        self,
        session_id: str,
        prompt: str,
        skip_permissions: bool,
        working_dir: str | None = None,
    ) -> SpawnArgs:
        """Argument vector that continues ``session_id``."""
        ...

    def extract_session_id(self, output: str) -> str | None:
        """Session id found in the output, or None when continuation is unsupported."""
        ...

    def build_follow_up_prompt(self, context: str) -> str | None:
        """Prompt for the next iteration, or None to use the default."""
        ...

    def build_resume_prompt(self, work_summary: str, remaining_criteria: list[str]) -> str | None:
        """Prompt after a cross-restart resume, or None to use the default."""
        ...

    def is_available(self) -> bool:
        """Check whether the CLI can run right now. Never cached."""
        ...


class AdapterRegistry:
    """Mapping from adapter type name to adapter instance."""

    def __init__(self):
        self._adapters: dict[str, AgentAdapter] = {}

    def register(self, adapter: AgentAdapter) -> None:
        """Register an adapter, replacing any with the same type."""
        if adapter.type in self._adapters:
            logger.debug(f"Replacing adapter: {adapter.type}")
        self._adapters[adapter.type] = adapter

    def unregister(self, name: str) -> bool:
        return self._adapters.pop(name, None) is not None

    def get(self, name: str) -> AgentAdapter | None:
        return self._adapters.get(name)

    def has(self, name: str) -> bool:
        return name in self._adapters

    def names(self) -> list[str]:
        return list(self._adapters)

    def list_all(self) -> list[AgentAdapter]:
        return list(self._adapters.values())

    def list_available(self) -> list[AgentAdapter]:
        """Adapters whose availability check passes now."""
        available = []
        for adapter in self._adapters.values():
            try:
                if adapter.is_available():
                    available.append(adapter)
            except Exception as e:
                logger.warning(f"Availability check failed for {adapter.type}: {e}")
        return available

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters
