"""Hot reload of adapter descriptors.

watchdog delivers events on its own thread; they are handed to the asyncio
loop and coalesced by a debounce timer so a burst of writes triggers a single
reload.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from alex.adapters.loader import is_descriptor_file

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.5
RELOAD_EVENT_TYPES = {"created", "modified", "deleted", "moved"}


class DescriptorEventHandler(FileSystemEventHandler):
    """Forwards descriptor file changes to the watcher on the event loop."""

    def __init__(self, watcher: AdapterWatcher):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in RELOAD_EVENT_TYPES:
            return

        paths = [event.src_path, getattr(event, "dest_path", "")]
        if not any(p and is_descriptor_file(str(p)) for p in paths):
            return

        logger.debug(f"Adapter descriptor {event.event_type}: {event.src_path}")
        self.watcher.notify_threadsafe()


class AdapterWatcher:
    """Watches descriptor directories and calls ``on_change`` after a quiet period."""

    def __init__(
        self,
        paths: list[Path],
        on_change: Callable[[], Awaitable[object]],
        loop: asyncio.AbstractEventLoop,
        debounce: float = DEBOUNCE_SECONDS,
    ):
        self.paths = [Path(p) for p in paths]
        self.on_change = on_change
        self.loop = loop
        self.debounce = debounce
        self.observer: Observer | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self.observer is not None

    def start(self) -> None:
        self.stop()

        handler = DescriptorEventHandler(self)
        observer = Observer()
        watched = 0
        for path in self.paths:
            try:
                path.mkdir(parents=True, exist_ok=True)
                observer.schedule(handler, str(path), recursive=False)
                watched += 1
            except OSError as e:
                logger.warning(f"Could not watch {path}: {e}")

        observer.start()
        self.observer = observer
        logger.info(f"Watching {watched} adapter director{'y' if watched == 1 else 'ies'}")

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None

    def notify_threadsafe(self) -> None:
        """Schedule a debounced reload from any thread."""
        if self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.notify)

    def notify(self) -> None:
        """Restart the debounce window. Must run on the event loop."""
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self.loop.call_later(self.debounce, self._fire)

    def _fire(self) -> None:
        self._timer = None
        task = self.loop.create_task(self._run_reload())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_reload(self) -> None:
        try:
            await self.on_change()
        except Exception as e:
            logger.error(f"Adapter reload failed: {e}")
