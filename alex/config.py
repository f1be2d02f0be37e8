"""Engine configuration.

Values are merged from, in increasing priority:

    defaults
    ~/.alex/config.toml
    <cwd>/.alex/config.toml
    ALEX_* environment variables (e.g. ALEX_MAX_ITERATIONS=20)
"""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from alex.core.circuit_breaker import CircuitBreakerThresholds
from alex.utils.exceptions import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "ALEX_"
CONFIG_DIR_NAME = ".alex"
CONFIG_FILE_NAME = "config.toml"


class AlexConfig(BaseModel):
    """Settings for the loop engine and CLI."""

    model_config = ConfigDict(extra="forbid")

    data_dir: Path = Field(default_factory=lambda: Path.cwd() / CONFIG_DIR_NAME / "data")
    default_agent: str = "claude"
    max_iterations: int = Field(100, ge=1)
    calls_per_hour: int = Field(100, ge=1)

    no_progress_threshold: int = Field(3, ge=1)
    same_error_threshold: int = Field(5, ge=1)
    output_decline_threshold: float = Field(0.7, gt=0, le=1)
    test_only_threshold: int = Field(3, ge=1)

    require_all_criteria: bool = False
    auto_request_review: bool = False
    log_level: str = "WARNING"

    global_adapters_dir: Path = Field(default_factory=lambda: Path.home() / CONFIG_DIR_NAME / "adapters")
    local_adapters_dir: Path = Field(default_factory=lambda: Path.cwd() / CONFIG_DIR_NAME / "adapters")
    watch_adapters: bool = True

    @property
    def thresholds(self) -> CircuitBreakerThresholds:
        return CircuitBreakerThresholds(
            no_progress=self.no_progress_threshold,
            same_error=self.same_error_threshold,
            output_decline=self.output_decline_threshold,
        )


def user_config_path() -> Path:
    return Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def project_config_path(cwd: Path | None = None) -> Path:
    return (cwd or Path.cwd()) / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as fp:
            data = tomllib.load(fp)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot read config file: {e}", config_file=str(path), cause=e) from e
    logger.debug(f"Loaded config from {path}")
    return data


def _env_overrides(env: Mapping[str, str]) -> dict[str, str]:
    fields = AlexConfig.model_fields
    overrides = {}
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in fields:
            overrides[name] = value
    return overrides


def load_config(
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    **overrides: Any,
) -> AlexConfig:
    """Build the effective configuration.

    Args:
        cwd: Project directory; defaults to the current directory.
        env: Environment to read ``ALEX_*`` variables from.
        overrides: Final values, e.g. from command-line options.

    Raises:
        ConfigError: If a file is unreadable or a value is invalid.
    """
    cwd = cwd or Path.cwd()
    values: dict[str, Any] = {
        "data_dir": cwd / CONFIG_DIR_NAME / "data",
        "local_adapters_dir": cwd / CONFIG_DIR_NAME / "adapters",
    }

    sources = [user_config_path(), project_config_path(cwd)]
    for path in sources:
        values.update(_read_toml(path))

    values.update(_env_overrides(os.environ if env is None else env))
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return AlexConfig.model_validate(values)
    except PydanticValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first["loc"])
        raise ConfigError(f"Invalid config value for {key}: {first['msg']}", config_key=key, cause=e) from e
