"""Loader for custom adapter descriptors.

Descriptors are read from three directories in increasing priority:

    bundled   alex/adapters/builtin/
    global    ~/.alex/adapters/
    local     <cwd>/.alex/adapters/

A descriptor in a later directory replaces one with the same name from an
earlier directory. Files that fail to parse or validate are reported as load
errors and skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import orjson
import yaml
from pydantic import ValidationError as PydanticValidationError

from alex.adapters.factory import ConfigAdapter, create_custom_adapter
from alex.adapters.schema import AdapterConfig
from alex.utils.exceptions import ConfigLoadError

logger = logging.getLogger(__name__)

DESCRIPTOR_SUFFIXES = (".yaml", ".yml", ".json")
BUNDLED_ADAPTERS_DIR = Path(__file__).parent / "builtin"


def default_global_dir() -> Path:
    return Path.home() / ".alex" / "adapters"


def default_local_dir() -> Path:
    return Path.cwd() / ".alex" / "adapters"


def is_descriptor_file(path: str | Path) -> bool:
    return Path(path).suffix.lower() in DESCRIPTOR_SUFFIXES


@dataclass
class LoadError:
    file: str
    error: str


@dataclass
class LoadResult:
    adapters: dict[str, ConfigAdapter] = field(default_factory=dict)
    errors: list[LoadError] = field(default_factory=list)


def parse_descriptor(path: Path) -> AdapterConfig:
    """Parse and validate one descriptor file.

    Raises:
        ConfigLoadError: If the file cannot be read, parsed or validated.
    """
    try:
        content = path.read_bytes()
        if path.suffix.lower() == ".json":
            data = orjson.loads(content)
        else:
            data = yaml.safe_load(content)
    except (OSError, orjson.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigLoadError(f"Parse error: {e}", file=str(path), cause=e) from e

    if not isinstance(data, dict):
        raise ConfigLoadError("Config must be an object", file=str(path))

    try:
        return AdapterConfig.model_validate(data)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigLoadError(f"Invalid adapter config: {problems}", file=str(path), cause=e) from e


class AdapterLoader:
    """Loads descriptors from the bundled, global and local directories."""

    def __init__(
        self,
        bundled_dir: Path | None = BUNDLED_ADAPTERS_DIR,
        global_dir: Path | None = None,
        local_dir: Path | None = None,
    ):
        self.bundled_dir = bundled_dir
        self.global_dir = global_dir if global_dir is not None else default_global_dir()
        self.local_dir = local_dir if local_dir is not None else default_local_dir()

    @property
    def directories(self) -> list[Path]:
        """Directories in priority order, lowest first."""
        return [d for d in (self.bundled_dir, self.global_dir, self.local_dir) if d is not None]

    @property
    def watch_paths(self) -> list[Path]:
        """User-editable directories; the bundled one ships with the package."""
        return [d for d in (self.global_dir, self.local_dir) if d is not None]

    def load(self) -> LoadResult:
        result = LoadResult()
        for directory in self.directories:
            for config in self._load_directory(directory, result.errors):
                if config.name in result.adapters:
                    logger.debug(f"Adapter {config.name} overridden by {directory}")
                result.adapters[config.name] = create_custom_adapter(config)

        for error in result.errors:
            logger.warning(f"Skipping adapter file {error.file}: {error.error}")
        return result

    def _load_directory(self, directory: Path, errors: list[LoadError]) -> list[AdapterConfig]:
        if not directory.is_dir():
            return []

        configs = []
        for path in sorted(directory.iterdir()):
            if not path.is_file() or not is_descriptor_file(path):
                continue
            try:
                configs.append(parse_descriptor(path))
            except ConfigLoadError as e:
                errors.append(LoadError(file=e.file, error=e.message))
        return configs
