"""Schema for custom adapter descriptor files (YAML or JSON)."""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ADAPTER_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_-]*$"


class _DescriptorModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AvailabilityConfig(_DescriptorModel):
    """How to tell whether the CLI is usable.

    ``which`` looks ``command`` up on PATH, ``exec`` runs ``target`` (or
    ``<command> --version``) expecting exit 0, ``exists`` checks that ``target``
    (or ``command``) is an existing path.
    """

    check: Literal["which", "exec", "exists"]
    target: str | None = None


class ArgsConfig(_DescriptorModel):
    args: list[str]


class SessionExtractionConfig(_DescriptorModel):
    patterns: list[str] = Field(..., min_length=1)

    @field_validator("patterns")
    @classmethod
    def patterns_compile(cls, v: list[str]) -> list[str]:
        for pattern in v:
            try:
                compiled = re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid regex pattern {pattern!r}: {e}") from e
            if compiled.groups < 1:
                raise ValueError(f"Pattern {pattern!r} needs a capture group for the session id")
        return v


class AdapterMeta(_DescriptorModel):
    version: str | None = None
    author: str | None = None
    description: str | None = None


class AdapterConfig(_DescriptorModel):
    """One custom adapter descriptor."""

    name: str = Field(..., pattern=ADAPTER_NAME_PATTERN)
    display_name: str | None = None
    command: str
    availability: AvailabilityConfig
    spawn: ArgsConfig
    continue_: ArgsConfig = Field(..., alias="continue")
    session_extraction: SessionExtractionConfig
    follow_up_prompt: str | None = None
    resume_prompt: str | None = None
    meta: AdapterMeta | None = None

    @field_validator("command")
    @classmethod
    def command_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("command cannot be empty")
        return v.strip()


def build_template_context(
    prompt: str = "",
    working_dir: str = "",
    skip_permissions: bool = False,
    session_id: str | None = None,
    work_summary: str | None = None,
    remaining_criteria: list[str] | None = None,
) -> dict[str, Any]:
    """Variables available to descriptor templates, keyed as written in files."""
    return {
        "prompt": prompt,
        "workingDir": working_dir,
        "skipPermissions": skip_permissions,
        "sessionId": session_id,
        "workSummary": work_summary,
        "remainingCriteria": remaining_criteria,
    }
