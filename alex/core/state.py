"""Durable loop state with async I/O.

The whole document is read and rewritten on every change. The pure helpers
(`add_loop`, `update_loop`, ...) never mutate their input; `StateStore.transact`
applies one of them under a lock and persists the result before returning.
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
import orjson

from alex.core.types import AppState, Loop
from alex.utils.exceptions import LoopNotFoundError, PersistenceError

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"
LOOPS_DIR_NAME = "loops"


def generate_loop_id() -> str:
    return f"loop_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def add_loop(state: AppState, loop: Loop) -> AppState:
    return state.model_copy(update={"loops": [*state.loops, loop]})


def update_loop(state: AppState, loop_id: str, **changes: Any) -> AppState:
    """Return a new document with ``changes`` applied to one loop.

    Raises:
        LoopNotFoundError: If no loop has ``loop_id``.
    """
    if get_loop(state, loop_id) is None:
        raise LoopNotFoundError(loop_id)
    loops = [
        loop.model_copy(update=changes) if loop.id == loop_id else loop
        for loop in state.loops
    ]
    return state.model_copy(update={"loops": loops})


def remove_loop(state: AppState, loop_id: str) -> AppState:
    loops = [loop for loop in state.loops if loop.id != loop_id]
    update: dict[str, Any] = {"loops": loops}
    if state.active_loop_id == loop_id:
        update["active_loop_id"] = None
    return state.model_copy(update=update)


def get_loop(state: AppState, loop_id: str) -> Loop | None:
    for loop in state.loops:
        if loop.id == loop_id:
            return loop
    return None


def set_active_loop(state: AppState, loop_id: str | None) -> AppState:
    return state.model_copy(update={"active_loop_id": loop_id})


class StateStore:
    """Whole-document persistence for :class:`AppState`.

    Uses aiofiles for non-blocking I/O and orjson for serialization. Writes go
    to a temporary file that is then renamed over the state file, so a crash
    mid-write leaves the previous document intact.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.state_file = self.data_dir / STATE_FILE_NAME
        self.loops_dir = self.data_dir / LOOPS_DIR_NAME
        self._lock = asyncio.Lock()

    def ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.loops_dir.mkdir(parents=True, exist_ok=True)

    def loop_dir(self, loop_id: str) -> Path:
        return self.loops_dir / loop_id

    async def load(self) -> AppState:
        """Load the document, falling back to an empty one on any read failure."""
        if not self.state_file.exists():
            return AppState()

        try:
            async with aiofiles.open(self.state_file, "rb") as fp:
                content = await fp.read()
            return AppState.model_validate(orjson.loads(content))
        except Exception as e:
            error = PersistenceError(
                "Failed to load state", path=str(self.state_file), cause=e
            )
            logger.warning(f"{error}; starting from an empty document")
            return AppState()

    async def save(self, state: AppState) -> None:
        """Persist the document atomically.

        Raises:
            PersistenceError: If the document cannot be written.
        """
        content = orjson.dumps(state.to_dict(), option=orjson.OPT_INDENT_2)
        tmp_path = self.state_file.with_suffix(f".{os.getpid()}.tmp")
        try:
            self.ensure_dirs()
            async with aiofiles.open(tmp_path, "wb") as fp:
                await fp.write(content)
            await aiofiles.os.replace(tmp_path, self.state_file)
        except OSError as e:
            logger.error(f"Failed to save state to {self.state_file}: {e}")
            raise PersistenceError(
                "Failed to save state", path=str(self.state_file), cause=e
            ) from e

    async def transact(self, fn: Callable[[AppState], AppState]) -> AppState:
        """Read-modify-write the document under the store lock."""
        async with self._lock:
            state = await self.load()
            new_state = fn(state)
            if new_state is not state:
                await self.save(new_state)
            return new_state

    async def get_loop(self, loop_id: str) -> Loop:
        loop = get_loop(await self.load(), loop_id)
        if loop is None:
            raise LoopNotFoundError(loop_id)
        return loop

    async def add_loop(self, loop: Loop) -> Loop:
        await self.transact(lambda state: add_loop(state, loop))
        return loop

    async def update_loop(self, loop_id: str, **changes: Any) -> Loop:
        state = await self.transact(lambda s: update_loop(s, loop_id, **changes))
        loop = get_loop(state, loop_id)
        assert loop is not None
        return loop

    async def remove_loop(self, loop_id: str) -> None:
        await self.transact(lambda state: remove_loop(state, loop_id))

    async def list_loops(self) -> list[Loop]:
        return list((await self.load()).loops)
