"""Prompt construction and criterion tag parsing."""

from __future__ import annotations

import re
from dataclasses import dataclass

from alex.core.analyzer import COMPLETION_MARKER
from alex.core.types import AcceptanceCriterion, Issue, Loop

CRITERION_TAG_PATTERN = re.compile(r"<criterion-(complete|incomplete)>(\d+)</criterion-\1>")
CRITERION_BUFFER_LIMIT = 2000

DEFAULT_FOLLOW_UP_PROMPT = "Continue working on the task. What is the next step?"


@dataclass(frozen=True)
class CriterionUpdate:
    index: int  # zero-based
    completed: bool


def build_prompt_from_issue(issue: Issue) -> str:
    """Build the initial task prompt for an issue."""
    parts = [f"# Task: {issue.title}\n"]
    if issue.url:
        parts.append(f"Issue: {issue.url}\n")

    if issue.acceptance_criteria:
        parts.append("## Acceptance Criteria")
        for criterion in issue.acceptance_criteria:
            checkbox = "[x]" if criterion.completed else "[ ]"
            parts.append(f"- {checkbox} {criterion.text}")
        parts.append("")

    parts.append(f"## Issue Description\n{issue.body}\n")
    parts.append("## Instructions")
    parts.append("Complete all acceptance criteria above.")
    parts.append("Mark criteria as you finish them with:")
    parts.append("- <criterion-complete>N</criterion-complete>")
    parts.append("- <criterion-incomplete>N</criterion-incomplete> (if you need to regress)")
    parts.append("Criteria are 1-indexed based on the list above.")
    parts.append(f"When all criteria are complete, output the exact tag: {COMPLETION_MARKER}")
    return "\n".join(parts) + "\n"


def build_intervention_prompt(message: str) -> str:
    return (
        f"OPERATOR INTERVENTION:\n{message}\n\n"
        "Please acknowledge this message and adjust your approach accordingly. "
        "Continue working on the task."
    )


def build_default_resume_prompt(work_summary: str, remaining_criteria: list[str]) -> str:
    remaining = ", ".join(remaining_criteria) or "none"
    return (
        f"Resuming from pause. Previous work summary:\n{work_summary}\n\n"
        f"Remaining criteria: {remaining}"
    )


def incomplete_criteria(criteria: list[AcceptanceCriterion]) -> list[str]:
    """Outstanding criteria as ``"N. text"`` with 1-based numbering."""
    return [
        f"{idx}. {criterion.text}"
        for idx, criterion in enumerate(criteria, start=1)
        if not criterion.completed
    ]


def build_remaining_criteria_prompt(criteria: list[AcceptanceCriterion]) -> str:
    remaining = "\n".join(f"- {item}" for item in incomplete_criteria(criteria))
    return (
        f"You output {COMPLETION_MARKER}, but the following criteria remain:\n"
        f"{remaining}\n\n"
        "Complete them and emit <criterion-complete>N</criterion-complete> for each, "
        f"then output {COMPLETION_MARKER} again."
    )


def parse_criterion_tags(chunk: str, buffer: str = "") -> tuple[list[CriterionUpdate], str]:
    """Find criterion tags in ``buffer + chunk``.

    Tags split across chunks are matched once the rest arrives, because the
    unmatched tail is returned as the next buffer (capped in size).

    Returns:
        The updates found and the buffer to carry into the next call.
    """
    combined = buffer + chunk
    updates: list[CriterionUpdate] = []
    last_end = 0
    for match in CRITERION_TAG_PATTERN.finditer(combined):
        number = int(match.group(2))
        if number > 0:
            updates.append(CriterionUpdate(index=number - 1, completed=match.group(1) == "complete"))
        last_end = match.end()

    rest = combined[last_end:]
    if len(rest) > CRITERION_BUFFER_LIMIT:
        rest = rest[-CRITERION_BUFFER_LIMIT:]
    return updates, rest


REVIEW_CRITERIA = [
    "Review correctness against acceptance criteria",
    "Check code quality and maintainability",
    "Identify any issues or improvements",
    "Provide actionable feedback",
]


def build_review_body(loop: Loop) -> str:
    """Task description for a reviewer agent looking at a finished loop."""
    issue = loop.issue
    criteria = "\n".join(
        f"- {'[x]' if c.completed else '[ ]'} {c.text}" for c in issue.acceptance_criteria
    ) or "- (none)"
    return (
        f"Another agent ({loop.agent}) worked on the task below and reported it complete "
        f"after {loop.iteration} iteration(s). Review its changes in this working directory "
        "(start from `git status` and `git diff`).\n\n"
        f"## Original Task: {issue.title}\n{issue.body}\n\n"
        f"## Original Acceptance Criteria\n{criteria}\n\n"
        "## Review Instructions\n"
        "Do not rewrite the work. Report concrete problems with file and line references, "
        "missing criteria, and suggested fixes. Finish with a short list of follow-up actions."
    )
