"""Compile adapter descriptors into adapters."""

from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
import subprocess

from alex.adapters.base import SpawnArgs
from alex.adapters.schema import AdapterConfig, build_template_context
from alex.adapters.template import render_args, render_template

logger = logging.getLogger(__name__)

AVAILABILITY_TIMEOUT = 10


class ConfigAdapter:
    """Adapter whose arguments and prompts come from a descriptor file."""

    def __init__(self, config: AdapterConfig):
        self.config = config
        self.type = config.name
        self.display_name = config.display_name or config.name
        self._session_patterns = [re.compile(p) for p in config.session_extraction.patterns]

    def build_spawn_args(
        self,
        prompt: str,
        skip_permissions: bool,
        working_dir: str | None = None,
    ) -> SpawnArgs:
        context = build_template_context(
            prompt=prompt,
            working_dir=working_dir or os.getcwd(),
            skip_permissions=skip_permissions,
        )
        return SpawnArgs(cmd=self.config.command, args=render_args(self.config.spawn.args, context))

    def build_continue_args(
        self,
        session_id: str,
        prompt: str,
        skip_permissions: bool,
        working_dir: str | None = None,
    ) -> SpawnArgs:
        context = build_template_context(
            prompt=prompt,
            working_dir=working_dir or os.getcwd(),
            skip_permissions=skip_permissions,
            session_id=session_id,
        )
        return SpawnArgs(cmd=self.config.command, args=render_args(self.config.continue_.args, context))

    def extract_session_id(self, output: str) -> str | None:
        for pattern in self._session_patterns:
            match = pattern.search(output)
            if match and match.group(1):
                return match.group(1)
        return None

    def build_follow_up_prompt(self, context: str) -> str | None:
        if not self.config.follow_up_prompt:
            return None
        return render_template(self.config.follow_up_prompt, build_template_context(prompt=context))

    def build_resume_prompt(self, work_summary: str, remaining_criteria: list[str]) -> str | None:
        if not self.config.resume_prompt:
            return None
        return render_template(
            self.config.resume_prompt,
            build_template_context(work_summary=work_summary, remaining_criteria=remaining_criteria),
        )

    def is_available(self) -> bool:
        availability = self.config.availability
        if availability.check == "which":
            return shutil.which(self.config.command) is not None
        if availability.check == "exists":
            return os.path.exists(os.path.expanduser(availability.target or self.config.command))

        argv = shlex.split(availability.target) if availability.target else [self.config.command, "--version"]
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                timeout=AVAILABILITY_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Availability check for {self.type} failed: {e}")
            return False
        return result.returncode == 0

    def __repr__(self) -> str:
        return f"ConfigAdapter(type={self.type!r}, command={self.config.command!r})"


def create_custom_adapter(config: AdapterConfig) -> ConfigAdapter:
    return ConfigAdapter(config)
