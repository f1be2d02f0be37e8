"""Adapter for the Claude CLI."""

from __future__ import annotations

import re
import shutil

from alex.adapters.base import SpawnArgs

SESSION_ID_PATTERNS = [
    re.compile(r'"sessionId"\s*:\s*"([^"]+)"'),
    re.compile(r'"session_id"\s*:\s*"([^"]+)"'),
]


def extract_json_session_id(output: str) -> str | None:
    for pattern in SESSION_ID_PATTERNS:
        match = pattern.search(output)
        if match:
            return match.group(1)
    return None


class ClaudeAdapter:
    """Runs ``claude -p`` with stream-json output, which carries the session id."""

    type = "claude"
    display_name = "Claude Code"
    command = "claude"

    def _args(self, prompt: str, skip_permissions: bool, session_id: str | None = None) -> SpawnArgs:
        args: list[str] = []
        if skip_permissions:
            args.append("--dangerously-skip-permissions")
        if session_id:
            args.extend(["--continue", session_id])
        args.extend(["-p", prompt, "--output-format", "stream-json"])
        return SpawnArgs(cmd=self.command, args=args)

    def build_spawn_args(
        self,
        prompt: str,
        skip_permissions: bool,
        working_dir: str | None = None,
    ) -> SpawnArgs:
        return self._args(prompt, skip_permissions)

    def build_continue_args(
        self,
        session_id: str,
        prompt: str,
        skip_permissions: bool,
        working_dir: str | None = None,
    ) -> SpawnArgs:
        return self._args(prompt, skip_permissions, session_id=session_id)

    def extract_session_id(self, output: str) -> str | None:
        return extract_json_session_id(output)

    def build_follow_up_prompt(self, context: str) -> str | None:
        return None

    def build_resume_prompt(self, work_summary: str, remaining_criteria: list[str]) -> str | None:
        return None

    def is_available(self) -> bool:
        return shutil.which(self.command) is not None
