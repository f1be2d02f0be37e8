"""Shared fixtures for alex tests."""

import asyncio
import re
import subprocess
import sys
from pathlib import Path

import pytest

from alex.adapters.base import AdapterRegistry, SpawnArgs
from alex.config import AlexConfig
from alex.core.events import EventBus
from alex.core.logs import LogStore
from alex.core.loops import LoopManager
from alex.core.state import StateStore
from alex.core.types import AcceptanceCriterion, Issue

MARKER = "<promise>TASK COMPLETE</promise>"
SESSION_PATTERN = re.compile(r"SESSION=(\S+)")


def script(*lines: str, exit_code: int = 0, sleep: float | None = None) -> str:
    """Python source that prints ``lines`` (flushed), optionally sleeps, then exits."""
    body = ["import sys, time"]
    body += [f"print({line!r}, flush=True)" for line in lines]
    if sleep is not None:
        body.append(f"time.sleep({sleep})")
    body.append(f"sys.exit({exit_code})")
    return "\n".join(body)


class ScriptAdapter:
    """Adapter that runs one Python script per iteration.

    Scripts are consumed in order; the last one repeats.
    """

    type = "fake"
    display_name = "Fake Agent"

    def __init__(self, *scripts: str, available: bool = True):
        self.scripts = list(scripts)
        self.available = available
        self.calls: list[tuple[str, str, str | None]] = []

    def _next(self) -> str:
        if len(self.scripts) > 1:
            return self.scripts.pop(0)
        return self.scripts[0]

    def build_spawn_args(self, prompt, skip_permissions, working_dir=None):
        self.calls.append(("spawn", prompt, None))
        return SpawnArgs(cmd=sys.executable, args=["-c", self._next()])

    def build_continue_args(self, session_id, prompt, skip_permissions, working_dir=None):
        self.calls.append(("continue", prompt, session_id))
        return SpawnArgs(cmd=sys.executable, args=["-c", self._next()])

    def extract_session_id(self, output):
        match = SESSION_PATTERN.search(output)
        return match.group(1) if match else None

    def build_follow_up_prompt(self, context):
        return None

    def build_resume_prompt(self, work_summary, remaining_criteria):
        return None

    def is_available(self):
        return self.available


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


async def wait_for_log(logs, loop_id: str, prefix: str, timeout: float = 10.0) -> None:
    """Poll a loop's log until an entry starts with ``prefix``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        entries = await logs.read_logs(loop_id)
        if any(e.content.startswith(prefix) for e in entries):
            return
        if loop.time() > deadline:
            raise AssertionError(f"no log entry starting with {prefix!r}")
        await asyncio.sleep(0.02)


def dead_pid() -> int:
    """Pid of a process that has already exited."""
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def config(data_dir: Path, tmp_path: Path) -> AlexConfig:
    return AlexConfig(
        data_dir=data_dir,
        global_adapters_dir=tmp_path / "global-adapters",
        local_adapters_dir=tmp_path / "local-adapters",
        watch_adapters=False,
    )


@pytest.fixture
def store(data_dir: Path) -> StateStore:
    return StateStore(data_dir)


@pytest.fixture
def logs(store: StateStore) -> LogStore:
    return LogStore(store.loops_dir)


@pytest.fixture
def registry() -> AdapterRegistry:
    return AdapterRegistry()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def manager(store, logs, registry, bus, config) -> LoopManager:
    return LoopManager(store, logs, registry, bus, config)


@pytest.fixture
def issue() -> Issue:
    return Issue(
        title="Add greeting",
        body="Print a greeting on startup.",
        url="https://example.com/issues/1",
        acceptance_criteria=[
            AcceptanceCriterion(text="Greeting is printed"),
            AcceptanceCriterion(text="Tests cover the greeting"),
        ],
    )
