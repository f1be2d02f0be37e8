"""Response analysis for agent iterations.

Scores one iteration's output for completion, exit intent, test-only work,
filesystem progress and repeated errors. Progress is measured against a git
baseline captured when the run starts, so files that were already dirty only
count once their content changes again.
"""

from __future__ import annotations

import hashlib
import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

COMPLETION_MARKER = "<promise>TASK COMPLETE</promise>"

STATUS_BLOCK_PATTERN = re.compile(
    r"---RALPH_STATUS---.*?STATUS:\s*(\S+).*?EXIT_SIGNAL:\s*(true|false).*?---END_RALPH_STATUS---",
    re.DOTALL | re.IGNORECASE,
)

COMPLETION_PATTERNS = [
    re.compile(r"\[DONE\]|\[COMPLETE\]", re.IGNORECASE),
    re.compile(r"(?:feature|task|phase|implementation)\s+(?:is\s+)?complete", re.IGNORECASE),
    re.compile(r"successfully\s+(?:implemented|completed|finished)", re.IGNORECASE),
    re.compile(r"all\s+tests?\s+(?:are\s+)?pass(?:ing|ed)?", re.IGNORECASE),
    re.compile(r"all\s+(?:tasks|features|requirements|criteria)\s+(?:are\s+)?(?:complete|done|met)", re.IGNORECASE),
    re.compile(r"\b(?:done|finished)\s+with\s+(?:the\s+)?(?:task|implementation)", re.IGNORECASE),
]

NO_WORK_PATTERNS = [
    re.compile(r"no\s+(?:further|more)\s+(?:work|changes|modifications)\s+(?:is\s+|are\s+)?(?:needed|required)", re.IGNORECASE),
    re.compile(r"nothing\s+(?:left|else|more)\s+to\s+(?:do|implement|change)", re.IGNORECASE),
    re.compile(r"already\s+(?:been\s+)?(?:implemented|complete|done)", re.IGNORECASE),
]

TEST_ONLY_PATTERNS = [
    re.compile(r"\b(?:npm|yarn|pnpm|bun)\s+(?:run\s+)?test\b", re.IGNORECASE),
    re.compile(r"\bpytest\b", re.IGNORECASE),
    re.compile(r"\bgo\s+test\b", re.IGNORECASE),
    re.compile(r"\bcargo\s+test\b", re.IGNORECASE),
    re.compile(r"\brunning\s+(?:the\s+)?tests?\b", re.IGNORECASE),
]

IMPLEMENTATION_PATTERNS = [
    re.compile(r"\b(?:creat|writ|edit|modif|updat|implement|refactor|add)(?:e|ed|ing)\s+(?:a\s+|the\s+)?(?:file|function|class|method|module|component)", re.IGNORECASE),
    re.compile(r"\b(?:Write|Edit|MultiEdit)\(", re.IGNORECASE),
    re.compile(r"\bapply_patch\b", re.IGNORECASE),
]

ERROR_PATTERNS = [
    re.compile(r"^Error:", re.IGNORECASE),
    re.compile(r"^ERROR:"),
    re.compile(r"\]: error", re.IGNORECASE),
    re.compile(r"Error occurred", re.IGNORECASE),
    re.compile(r"failed with error", re.IGNORECASE),
    re.compile(r"[Ee]xception"),
    re.compile(r"Fatal", re.IGNORECASE),
    re.compile(r"FATAL"),
]

# Structured fields such as "is_error": false are not errors
JSON_ERROR_FIELD_PATTERN = re.compile(r'"[^"]*error[^"]*"\s*:', re.IGNORECASE)

WORK_SUMMARY_MAX_LINES = 3
WORK_SUMMARY_MAX_CHARS = 200
MIN_SUMMARY_LINE_LENGTH = 10


@dataclass
class GitBaseline:
    """Dirty files and their content hashes when a run started."""

    initial_dirty_files: set[str] = field(default_factory=set)
    initial_file_hashes: dict[str, str] = field(default_factory=dict)


@dataclass
class AnalysisResult:
    """Analysis of one iteration's output."""

    has_completion_signal: bool = False
    is_test_only: bool = False
    is_stuck: bool = False
    has_progress: bool = False
    exit_signal: bool | None = None
    completion_indicators: int = 0
    files_modified: int = 0
    output_length: int = 0
    errors: list[str] = field(default_factory=list)
    work_summary: str = ""
    confidence_score: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "has_completion_signal": self.has_completion_signal,
            "is_test_only": self.is_test_only,
            "is_stuck": self.is_stuck,
            "has_progress": self.has_progress,
            "exit_signal": self.exit_signal,
            "completion_indicators": self.completion_indicators,
            "files_modified": self.files_modified,
            "output_length": self.output_length,
            "errors": list(self.errors),
            "work_summary": self.work_summary,
            "confidence_score": self.confidence_score,
        }


def analyze_response(
    output: str,
    working_dir: str | Path,
    git_baseline: GitBaseline | None = None,
) -> AnalysisResult:
    """Analyze agent output for completion, progress and errors.

    Args:
        output: Combined output of one iteration.
        working_dir: Directory the agent worked in.
        git_baseline: Dirty state captured at run start, if any.

    Returns:
        The analysis result.
    """
    result = AnalysisResult(output_length=len(output))

    if COMPLETION_MARKER in output:
        result.has_completion_signal = True
        result.completion_indicators += 2
        result.confidence_score += 50

    status_match = STATUS_BLOCK_PATTERN.search(output)
    if status_match:
        result.exit_signal = status_match.group(2).lower() == "true"
        if result.exit_signal:
            result.completion_indicators += 2
            result.confidence_score += 50

    keyword_count = sum(1 for pattern in COMPLETION_PATTERNS if pattern.search(output))
    if keyword_count >= 2:
        result.completion_indicators += 1
        result.confidence_score += 10 * keyword_count

    if any(pattern.search(output) for pattern in NO_WORK_PATTERNS):
        result.completion_indicators += 1
        result.confidence_score += 15

    test_count = sum(len(pattern.findall(output)) for pattern in TEST_ONLY_PATTERNS)
    impl_count = sum(len(pattern.findall(output)) for pattern in IMPLEMENTATION_PATTERNS)
    result.is_test_only = test_count > 0 and impl_count == 0

    result.files_modified = count_git_changes(working_dir, git_baseline)
    if result.files_modified > 0:
        result.has_progress = True
        result.confidence_score += 20

    result.errors = extract_errors(output)
    if result.errors:
        result.confidence_score -= 10

    result.work_summary = generate_work_summary(output)

    result.is_stuck = (
        not result.has_progress
        and result.completion_indicators == 0
        and len(result.errors) > 0
    )
    return result


def extract_errors(output: str) -> list[str]:
    """Return distinct error lines in order of first appearance."""
    errors: list[str] = []
    for line in output.splitlines():
        if JSON_ERROR_FIELD_PATTERN.search(line):
            continue
        if any(pattern.search(line) for pattern in ERROR_PATTERNS):
            trimmed = line.strip()
            if trimmed and trimmed not in errors:
                errors.append(trimmed)
    return errors


def generate_work_summary(output: str) -> str:
    lines: list[str] = []
    for line in output.splitlines():
        trimmed = line.strip()
        if len(trimmed) < MIN_SUMMARY_LINE_LENGTH:
            continue
        if trimmed.startswith(("{", "[", "//", "<", "```")):
            continue
        lines.append(trimmed)
        if len(lines) >= WORK_SUMMARY_MAX_LINES:
            break
    return " ".join(lines)[:WORK_SUMMARY_MAX_CHARS]


def should_exit(
    analysis: AnalysisResult,
    consecutive_test_only: int,
    test_threshold: int,
) -> str | None:
    """Decide whether the run should end.

    Priority: completion marker, then test saturation, then the agent's
    explicit exit signal. ``exit_signal`` False never exits.

    Returns:
        The exit reason, or None to continue.
    """
    if analysis.has_completion_signal:
        return "completion_signal"

    if analysis.is_test_only and consecutive_test_only >= test_threshold:
        return "test_saturation"

    if analysis.exit_signal is True:
        if analysis.completion_indicators >= 2:
            return "project_complete"
        return "exit_signal"

    return None


def are_errors_repeating(current: list[str], previous: list[str]) -> bool:
    """True when every current error is contained in, or contains, a previous one."""
    if not current:
        return False
    return all(
        any(prev in err or err in prev for prev in previous)
        for err in current
    )


def _run_git(working_dir: str | Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=working_dir,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


def get_repo_root(working_dir: str | Path) -> str:
    return _run_git(working_dir, "rev-parse", "--show-toplevel").strip()


def get_dirty_files(working_dir: str | Path) -> set[str]:
    """Staged, unstaged and untracked paths relative to the repository root.

    Raises:
        subprocess.CalledProcessError: If ``working_dir`` is not in a repository.
        OSError: If git cannot be executed.
    """
    output = _run_git(
        working_dir, "status", "--porcelain=v1", "-z", "--untracked-files=all"
    )
    files: set[str] = set()
    entries = output.split("\0")
    skip_next = False
    for entry in entries:
        if skip_next:
            skip_next = False
            continue
        if len(entry) < 4:
            continue
        status, path = entry[:2], entry[3:]
        files.add(path)
        # Renames and copies are followed by the original path
        if "R" in status or "C" in status:
            skip_next = True
    return files


def get_file_hash(repo_root: str | Path, file: str) -> str | None:
    """Content hash of a file, via git's object hash or SHA-256 of the bytes.

    ``file`` is relative to ``repo_root``, as reported by ``git status``.
    """
    try:
        return _run_git(repo_root, "hash-object", "--", file).strip()
    except (subprocess.CalledProcessError, OSError):
        pass

    try:
        content = (Path(repo_root) / file).read_bytes()
    except OSError:
        return None
    return hashlib.sha256(content).hexdigest()


def capture_git_baseline(working_dir: str | Path) -> GitBaseline | None:
    """Snapshot dirty files and their hashes, or None outside a repository."""
    try:
        root = get_repo_root(working_dir)
        dirty = get_dirty_files(working_dir)
    except (subprocess.CalledProcessError, OSError) as e:
        logger.debug(f"No git baseline for {working_dir}: {e}")
        return None

    baseline = GitBaseline(initial_dirty_files=dirty)
    for file in dirty:
        file_hash = get_file_hash(root, file)
        if file_hash:
            baseline.initial_file_hashes[file] = file_hash
    return baseline


def count_git_changes(working_dir: str | Path, git_baseline: GitBaseline | None = None) -> int:
    """Count files changed since the baseline; 0 outside a repository."""
    try:
        root = get_repo_root(working_dir)
        current = get_dirty_files(working_dir)
    except (subprocess.CalledProcessError, OSError):
        return 0

    baseline = git_baseline or GitBaseline()
    count = 0
    for file in current:
        if file not in baseline.initial_dirty_files:
            count += 1
            continue
        initial_hash = baseline.initial_file_hashes.get(file)
        if initial_hash:
            current_hash = get_file_hash(root, file)
            if current_hash and current_hash != initial_hash:
                count += 1
    return count
