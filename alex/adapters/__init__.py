from alex.adapters.base import AdapterRegistry, AgentAdapter, SpawnArgs
from alex.adapters.claude import ClaudeAdapter
from alex.adapters.codex import CodexAdapter
from alex.adapters.factory import ConfigAdapter, create_custom_adapter
from alex.adapters.loader import AdapterLoader, LoadError, LoadResult
from alex.adapters.schema import AdapterConfig
from alex.adapters.service import AdapterService
from alex.adapters.template import render_args, render_template
from alex.adapters.watcher import AdapterWatcher

__all__ = [
    "AdapterConfig",
    "AdapterLoader",
    "AdapterRegistry",
    "AdapterService",
    "AdapterWatcher",
    "AgentAdapter",
    "ClaudeAdapter",
    "CodexAdapter",
    "ConfigAdapter",
    "LoadError",
    "LoadResult",
    "SpawnArgs",
    "create_custom_adapter",
    "render_args",
    "render_template",
]
