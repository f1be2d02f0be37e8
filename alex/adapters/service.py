"""Adapter lifecycle: initial registration, reload and hot reload."""

from __future__ import annotations

import asyncio
import logging

from alex.adapters.base import AdapterRegistry
from alex.adapters.claude import ClaudeAdapter
from alex.adapters.codex import CodexAdapter
from alex.adapters.loader import AdapterLoader, LoadResult
from alex.adapters.watcher import AdapterWatcher
from alex.core.events import EventBus, EventType

logger = logging.getLogger(__name__)


class AdapterService:
    """Owns the registry contents for one process.

    Built-in adapters are registered first so descriptors can override them by
    name. Reloads only add or replace adapters; a descriptor that disappears
    or breaks leaves the last good adapter registered.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        loader: AdapterLoader,
        bus: EventBus | None = None,
    ):
        self.registry = registry
        self.loader = loader
        self.bus = bus or EventBus()
        self.watcher: AdapterWatcher | None = None

    def _register_loaded(self, result: LoadResult) -> None:
        for adapter in result.adapters.values():
            self.registry.register(adapter)

    def init(self) -> LoadResult:
        self.registry.register(ClaudeAdapter())
        self.registry.register(CodexAdapter())

        result = self.loader.load()
        self._register_loaded(result)
        if result.errors:
            logger.warning(
                f"Loaded {len(result.adapters)} adapter config(s) with {len(result.errors)} error(s)"
            )
        return result

    async def reload(self) -> LoadResult:
        result = await asyncio.to_thread(self.loader.load)
        self._register_loaded(result)

        for error in result.errors:
            await self.bus.emit(EventType.ADAPTERS_ERROR, file=error.file, error=error.error)
        await self.bus.emit(
            EventType.ADAPTERS_RELOADED,
            count=len(result.adapters),
            errors=len(result.errors),
        )
        logger.info(f"Reloaded {len(result.adapters)} adapter config(s)")
        return result

    def start_watching(self, loop: asyncio.AbstractEventLoop | None = None) -> AdapterWatcher:
        """Start hot reload. Must be called with an event loop available."""
        self.stop_watching()
        loop = loop or asyncio.get_running_loop()
        self.watcher = AdapterWatcher(self.loader.watch_paths, self.reload, loop)
        self.watcher.start()
        return self.watcher

    def stop_watching(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None

    def teardown(self) -> None:
        self.stop_watching()
