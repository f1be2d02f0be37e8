"""Process suspension strategies for pause and resume."""

from __future__ import annotations

import logging
import os
import signal
from abc import ABC, abstractmethod
from asyncio.subprocess import Process

logger = logging.getLogger(__name__)

PAUSE_MESSAGE = "\n[OPERATOR] Pause: stop working and wait for further instructions.\n"
RESUME_MESSAGE = "\n[OPERATOR] Resume: continue working on the task.\n"


class ProcessSuspender(ABC):
    """Pauses and resumes an agent process."""

    name: str = "base"

    @abstractmethod
    async def suspend(self, process: Process) -> None:
        ...

    @abstractmethod
    async def resume(self, process: Process) -> None:
        ...


def signal_process_group(process: Process, sig: signal.Signals) -> None:
    """Send ``sig`` to the process group, falling back to the process itself.

    Raises:
        ProcessLookupError: If the process is gone.
    """
    if hasattr(os, "killpg"):
        try:
            os.killpg(process.pid, sig)
            return
        except PermissionError:
            pass
    process.send_signal(sig)


class SignalSuspender(ProcessSuspender):
    """SIGSTOP / SIGCONT on the agent's process group (POSIX)."""

    name = "signal"

    async def suspend(self, process: Process) -> None:
        signal_process_group(process, signal.SIGSTOP)

    async def resume(self, process: Process) -> None:
        signal_process_group(process, signal.SIGCONT)


class StdinSuspender(ProcessSuspender):
    """Cooperative pause: ask the agent over stdin."""

    name = "stdin"

    async def _write(self, process: Process, message: str) -> None:
        if process.stdin is None or process.stdin.is_closing():
            logger.warning(f"Cannot reach process {process.pid}: stdin is closed")
            return
        process.stdin.write(message.encode())
        await process.stdin.drain()

    async def suspend(self, process: Process) -> None:
        await self._write(process, PAUSE_MESSAGE)

    async def resume(self, process: Process) -> None:
        await self._write(process, RESUME_MESSAGE)


def default_suspender() -> ProcessSuspender:
    if hasattr(signal, "SIGSTOP") and hasattr(signal, "SIGCONT"):
        return SignalSuspender()
    return StdinSuspender()
