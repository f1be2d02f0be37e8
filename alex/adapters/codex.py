"""Adapter for the Codex CLI in non-interactive ``exec`` mode."""

from __future__ import annotations

import re
import shutil

from alex.adapters.base import SpawnArgs
from alex.adapters.claude import extract_json_session_id

SESSION_LINE_PATTERN = re.compile(
    r"Session:\s*([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})",
    re.IGNORECASE,
)


class CodexAdapter:
    type = "codex"
    display_name = "Codex"
    command = "codex"

    def build_spawn_args(
        self,
        prompt: str,
        skip_permissions: bool,
        working_dir: str | None = None,
    ) -> SpawnArgs:
        args = ["exec"]
        if skip_permissions:
            args.append("--full-auto")
        args.append(prompt)
        return SpawnArgs(cmd=self.command, args=args)

    def build_continue_args(
        self,
        session_id: str,
        prompt: str,
        skip_permissions: bool,
        working_dir: str | None = None,
    ) -> SpawnArgs:
        # A failed resume yields no session id, so the next iteration spawns fresh
        args = ["exec", "resume", session_id]
        if skip_permissions:
            args.append("--full-auto")
        args.append(prompt)
        return SpawnArgs(cmd=self.command, args=args)

    def extract_session_id(self, output: str) -> str | None:
        session_id = extract_json_session_id(output)
        if session_id:
            return session_id
        match = SESSION_LINE_PATTERN.search(output)
        return match.group(1) if match else None

    def build_follow_up_prompt(self, context: str) -> str | None:
        return None

    def build_resume_prompt(self, work_summary: str, remaining_criteria: list[str]) -> str | None:
        return None

    def is_available(self) -> bool:
        return shutil.which(self.command) is not None
