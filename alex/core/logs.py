"""Append-only per-loop log in JSON lines.

Each loop writes to ``<data_dir>/loops/<loop_id>/log.jsonl``. Readers can load
everything, a recent window, or tail the file from a byte offset.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path

import aiofiles
import orjson
from pydantic import ValidationError as PydanticValidationError

from alex.core.types import LogEntry, LogType
from alex.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)

LOG_FILE_NAME = "log.jsonl"
RESUME_SUMMARY_ENTRIES = 20
RESUME_SUMMARY_MAX_CHARS = 1000


def _parse_lines(content: bytes) -> list[LogEntry]:
    entries = []
    for line in content.splitlines():
        if not line.strip():
            continue
        try:
            entries.append(LogEntry.model_validate(orjson.loads(line)))
        except (orjson.JSONDecodeError, PydanticValidationError):
            logger.debug(f"Skipping malformed log line: {line[:80]!r}")
    return entries


class LogStore:
    """Per-loop JSONL logs under a loops directory."""

    def __init__(self, loops_dir: Path):
        self.loops_dir = Path(loops_dir)
        self._lock = asyncio.Lock()

    def log_path(self, loop_id: str) -> Path:
        return self.loops_dir / loop_id / LOG_FILE_NAME

    async def append(self, loop_id: str, type: LogType, content: str) -> LogEntry:
        """Append one entry.

        Raises:
            PersistenceError: If the log cannot be written.
        """
        entry = LogEntry(loop_id=loop_id, type=type, content=content)
        path = self.log_path(loop_id)
        line = orjson.dumps(entry.to_dict()) + b"\n"
        try:
            async with self._lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(path, "ab") as fp:
                    await fp.write(line)
        except OSError as e:
            raise PersistenceError("Failed to append log entry", path=str(path), cause=e) from e
        return entry

    async def system(self, loop_id: str, content: str) -> LogEntry:
        return await self.append(loop_id, LogType.SYSTEM, content)

    async def error(self, loop_id: str, content: str) -> LogEntry:
        return await self.append(loop_id, LogType.ERROR, content)

    async def read_logs(self, loop_id: str) -> list[LogEntry]:
        path = self.log_path(loop_id)
        if not path.exists():
            return []
        async with aiofiles.open(path, "rb") as fp:
            content = await fp.read()
        return _parse_lines(content)

    async def read_recent(self, loop_id: str, count: int) -> list[LogEntry]:
        if count <= 0:
            return []
        entries = await self.read_logs(loop_id)
        return entries[-count:]

    async def read_since(self, loop_id: str, offset: int = 0) -> tuple[list[LogEntry], int]:
        """Read complete lines written after ``offset``.

        Returns:
            The new entries and the offset to pass on the next call. A
            trailing partial line is left for the next read.
        """
        path = self.log_path(loop_id)
        if not path.exists():
            return [], offset

        async with aiofiles.open(path, "rb") as fp:
            await fp.seek(offset)
            content = await fp.read()

        end = content.rfind(b"\n")
        if end < 0:
            return [], offset
        complete = content[: end + 1]
        return _parse_lines(complete), offset + len(complete)

    async def follow(
        self,
        loop_id: str,
        offset: int | None = None,
        poll_interval: float = 0.25,
    ) -> AsyncIterator[LogEntry]:
        """Yield entries as they are appended, starting at ``offset``.

        ``None`` starts at the current end of the log. Runs until cancelled.
        """
        if offset is None:
            path = self.log_path(loop_id)
            offset = path.stat().st_size if path.exists() else 0

        while True:
            entries, offset = await self.read_since(loop_id, offset)
            for entry in entries:
                yield entry
            if not entries:
                await asyncio.sleep(poll_interval)

    async def generate_resume_summary(
        self,
        loop_id: str,
        max_chars: int = RESUME_SUMMARY_MAX_CHARS,
    ) -> str:
        """Condense recent agent output into a summary for a resume prompt."""
        entries = await self.read_logs(loop_id)
        agent_output = [e.content.strip() for e in entries if e.type == LogType.AGENT]
        recent = [text for text in agent_output[-RESUME_SUMMARY_ENTRIES:] if text]
        if not recent:
            return "No previous output recorded."

        summary = "\n".join(recent)
        if len(summary) > max_chars:
            summary = "..." + summary[-(max_chars - 3):]
        return summary
