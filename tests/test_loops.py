"""Tests for the loop lifecycle manager."""

import asyncio
import os

import pytest

from alex.core.events import EventType
from alex.core.loops import REVIEW_MAX_ITERATIONS, LoopManager, describe_exit, pid_alive
from alex.core.prompts import REVIEW_CRITERIA
from alex.core.suspend import StdinSuspender
from alex.core.types import ExitReason, LogType, LoopStatus
from alex.utils.exceptions import (
    AdapterUnavailableError,
    InvalidTransitionError,
    NoActiveProcessError,
    ValidationError,
)
from conftest import MARKER, ScriptAdapter, dead_pid, script, wait_for_log, wait_until

posix_only = pytest.mark.skipif(os.name != "posix", reason="requires POSIX signals")

TASK_TIMEOUT = 20


async def create(manager, issue, work_dir, adapter, max_iterations=5):
    manager.registry.register(adapter)
    return await manager.create_loop(issue, adapter.type, False, work_dir, max_iterations)


async def finish(task):
    await asyncio.wait_for(task, TASK_TIMEOUT)


class TestCreateLoop:
    """Test loop creation."""

    @pytest.mark.asyncio
    async def test_create_loop_persists_queued_loop(self, manager, issue, work_dir):
        """A new loop is queued and stored."""
        loop = await manager.create_loop(issue, "claude", True, work_dir, 7)
        assert loop.status == LoopStatus.QUEUED
        assert loop.iteration == 0
        assert loop.max_iterations == 7
        assert loop.skip_permissions is True
        assert loop.id.startswith("loop_")

        stored = await manager.get_loop(loop.id)
        assert stored.issue.title == "Add greeting"

        entries = await manager.logs.read_logs(loop.id)
        assert entries[0].content == "Loop created for issue: Add greeting"

    @pytest.mark.asyncio
    async def test_create_loop_defaults_max_iterations_from_config(self, manager, issue, work_dir):
        """Max iterations falls back to the configured value."""
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        assert loop.max_iterations == manager.config.max_iterations

    @pytest.mark.asyncio
    async def test_create_loop_rejects_missing_directory(self, manager, issue, tmp_path):
        """Working directory must exist."""
        with pytest.raises(ValidationError) as exc_info:
            await manager.create_loop(issue, "claude", False, tmp_path / "missing")
        assert exc_info.value.field == "working_dir"

    @pytest.mark.asyncio
    async def test_create_loop_rejects_zero_iterations(self, manager, issue, work_dir):
        """Max iterations must be at least one."""
        with pytest.raises(ValidationError):
            await manager.create_loop(issue, "claude", False, work_dir, 0)


class TestStartLoop:
    """Test starting loops and run outcomes."""

    @pytest.mark.asyncio
    async def test_unregistered_agent_keeps_loop_queued(self, manager, issue, work_dir):
        """Unknown adapters fail the start without changing state."""
        loop = await manager.create_loop(issue, "nonexistent", False, work_dir)
        with pytest.raises(AdapterUnavailableError):
            await manager.start_loop(loop.id)
        assert (await manager.get_loop(loop.id)).status == LoopStatus.QUEUED

    @pytest.mark.asyncio
    async def test_unavailable_agent_keeps_loop_queued(self, manager, issue, work_dir):
        """A failing availability check prevents the start."""
        adapter = ScriptAdapter(script("hi"), available=False)
        loop = await create(manager, issue, work_dir, adapter)
        with pytest.raises(AdapterUnavailableError):
            await manager.start_loop(loop.id)
        assert (await manager.get_loop(loop.id)).status == LoopStatus.QUEUED
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_completion_marker_completes_loop(self, manager, issue, work_dir):
        """The marker on stdout terminates the agent and completes the loop."""
        adapter = ScriptAdapter(script("working on it", MARKER, sleep=30))
        loop = await create(manager, issue, work_dir, adapter)

        task = await manager.start_loop(loop.id)
        await finish(task)

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.COMPLETED
        assert loop.exit_reason == ExitReason.COMPLETION_SIGNAL.value
        assert loop.iteration == 1
        assert loop.pid is None
        assert loop.ended_at is not None

        kind, prompt, _ = adapter.calls[0]
        assert kind == "spawn"
        assert prompt.startswith("# Task: Add greeting")

    @pytest.mark.asyncio
    async def test_agent_output_is_logged(self, manager, issue, work_dir):
        """Each stdout line becomes an agent log entry."""
        adapter = ScriptAdapter(script("first line", "second line", MARKER))
        loop = await create(manager, issue, work_dir, adapter)
        await finish(await manager.start_loop(loop.id))

        agent_lines = [e.content for e in await manager.logs.read_logs(loop.id) if e.type == LogType.AGENT]
        assert agent_lines[:2] == ["first line", "second line"]

    @pytest.mark.asyncio
    async def test_max_iterations_completes_loop(self, manager, issue, work_dir):
        """Clean exits without an exit condition run until the budget is spent."""
        adapter = ScriptAdapter(script("still going"))
        loop = await create(manager, issue, work_dir, adapter, max_iterations=2)
        await finish(await manager.start_loop(loop.id))

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.COMPLETED
        assert loop.exit_reason == ExitReason.MAX_ITERATIONS.value
        assert loop.iteration == 2
        assert len(adapter.calls) == 2
        assert adapter.calls[1][1] == "Continue working on the task. What is the next step?"

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_loop(self, manager, issue, work_dir):
        """A failing agent process ends the loop in error."""
        adapter = ScriptAdapter(script("boom", exit_code=3))
        loop = await create(manager, issue, work_dir, adapter)
        await finish(await manager.start_loop(loop.id))

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.ERROR
        assert loop.exit_reason == ExitReason.ERROR.value
        assert loop.error == "Agent exited with code 3"

    @pytest.mark.asyncio
    async def test_circuit_breaker_halts_loop(self, manager, issue, work_dir):
        """Repeated iterations without progress open the breaker."""
        adapter = ScriptAdapter(script("thinking about the problem"))
        loop = await create(manager, issue, work_dir, adapter, max_iterations=10)
        await finish(await manager.start_loop(loop.id))

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.ERROR
        assert loop.exit_reason == ExitReason.CIRCUIT_BREAKER.value
        assert loop.error == "No progress for 3 iterations"
        assert loop.iteration == 3

    @pytest.mark.asyncio
    async def test_start_running_loop_is_rejected(self, manager, issue, work_dir):
        """A loop cannot be started twice."""
        adapter = ScriptAdapter(script("started", sleep=30))
        loop = await create(manager, issue, work_dir, adapter)
        task = await manager.start_loop(loop.id)
        try:
            with pytest.raises(InvalidTransitionError):
                await manager.start_loop(loop.id)
        finally:
            await manager.shutdown()
            await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), TASK_TIMEOUT)

    @pytest.mark.asyncio
    async def test_rate_limit_blocks_next_iteration(self, store, logs, registry, bus, config, issue, work_dir):
        """An exhausted hourly budget holds the run until it is stopped."""
        manager = LoopManager(store, logs, registry, bus, config.model_copy(update={"calls_per_hour": 1}))
        adapter = ScriptAdapter(script("still going"))
        loop = await create(manager, issue, work_dir, adapter, max_iterations=2)
        task = await manager.start_loop(loop.id)

        await wait_for_log(logs, loop.id, "Rate limit reached.")
        await asyncio.sleep(0.2)
        assert not task.done()
        assert len(adapter.calls) == 1
        loop = await manager.get_loop(loop.id)
        assert loop.iteration == 1
        assert loop.status == LoopStatus.RUNNING

        await manager.stop_loop(loop.id)
        await asyncio.wait_for(task, 5)

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.STOPPED
        assert loop.exit_reason == ExitReason.USER_STOPPED.value
        assert len(adapter.calls) == 1


class TestCriteria:
    """Test acceptance criterion tracking."""

    @pytest.mark.asyncio
    async def test_agent_tags_mark_criteria(self, manager, issue, work_dir):
        """Criterion tags in agent output update the issue."""
        adapter = ScriptAdapter(script("<criterion-complete>1</criterion-complete>", MARKER))
        loop = await create(manager, issue, work_dir, adapter)
        await finish(await manager.start_loop(loop.id))

        loop = await manager.get_loop(loop.id)
        first, second = loop.issue.acceptance_criteria
        assert first.completed is True
        assert first.completed_by == "agent"
        assert first.completed_at is not None
        assert second.completed is False

        contents = [e.content for e in await manager.logs.read_logs(loop.id)]
        assert "Criterion 1 marked complete by agent" in contents

    @pytest.mark.asyncio
    async def test_out_of_range_tag_is_ignored(self, manager, issue, work_dir):
        """Tags for criteria that do not exist change nothing."""
        adapter = ScriptAdapter(script("<criterion-complete>9</criterion-complete>", MARKER))
        loop = await create(manager, issue, work_dir, adapter)
        await finish(await manager.start_loop(loop.id))

        loop = await manager.get_loop(loop.id)
        assert not any(c.completed for c in loop.issue.acceptance_criteria)

    @pytest.mark.asyncio
    async def test_require_all_criteria_reprompts(self, manager, issue, work_dir):
        """With all criteria required, an early marker asks for the rest."""
        manager.config.require_all_criteria = True
        adapter = ScriptAdapter(
            script("<criterion-complete>1</criterion-complete>", MARKER),
            script("<criterion-complete>2</criterion-complete>", MARKER),
        )
        loop = await create(manager, issue, work_dir, adapter)
        await finish(await manager.start_loop(loop.id))

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.COMPLETED
        assert loop.exit_reason == ExitReason.COMPLETION_SIGNAL.value
        assert loop.iteration == 2
        assert loop.issue.all_criteria_complete()
        assert "Tests cover the greeting" in adapter.calls[1][1]

    @pytest.mark.asyncio
    async def test_operator_sets_criterion(self, manager, issue, work_dir, bus):
        """Operators can toggle criteria directly."""
        events = []
        bus.subscribe(EventType.LOOP_CRITERIA, events.append)
        loop = await manager.create_loop(issue, "claude", False, work_dir)

        loop = await manager.set_criterion(loop.id, 1, True)
        assert loop.issue.acceptance_criteria[1].completed_by == "operator"
        assert len(events) == 1

        loop = await manager.set_criterion(loop.id, 1, False)
        assert loop.issue.acceptance_criteria[1].completed is False
        assert loop.issue.acceptance_criteria[1].completed_by is None

    @pytest.mark.asyncio
    async def test_operator_criterion_out_of_range(self, manager, issue, work_dir):
        """Invalid criterion indexes are rejected."""
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        with pytest.raises(ValidationError):
            await manager.set_criterion(loop.id, 5, True)


class TestSessions:
    """Test session continuation."""

    @pytest.mark.asyncio
    async def test_session_is_continued(self, manager, issue, work_dir):
        """A reported session id is used for the next iteration."""
        adapter = ScriptAdapter(script("SESSION=abc123def"), script(MARKER))
        loop = await create(manager, issue, work_dir, adapter)
        await finish(await manager.start_loop(loop.id))

        assert [call[0] for call in adapter.calls] == ["spawn", "continue"]
        assert adapter.calls[1][2] == "abc123def"

    @pytest.mark.asyncio
    async def test_failed_continuation_falls_back_to_fresh_spawn(self, manager, issue, work_dir):
        """A failing continuation drops the session and respawns with the full prompt."""
        adapter = ScriptAdapter(
            script("SESSION=abc123def"),
            script("no such session", exit_code=1),
            script(MARKER),
        )
        loop = await create(manager, issue, work_dir, adapter)
        await finish(await manager.start_loop(loop.id))

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.COMPLETED
        assert [call[0] for call in adapter.calls] == ["spawn", "continue", "spawn"]
        assert adapter.calls[2][1].startswith("# Task: Add greeting")


@posix_only
class TestControl:
    """Test pause, resume, stop and interventions on live processes."""

    @pytest.mark.asyncio
    async def test_stop_running_loop(self, manager, issue, work_dir, bus):
        """Stopping terminates the agent and records the user stop."""
        stopped = []
        bus.subscribe(EventType.LOOP_STOPPED, stopped.append)
        adapter = ScriptAdapter(script("started", sleep=30))
        loop = await create(manager, issue, work_dir, adapter)
        task = await manager.start_loop(loop.id)
        await wait_until(lambda: manager.get_process(loop.id) is not None)

        await manager.stop_loop(loop.id)
        await finish(task)

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.STOPPED
        assert loop.exit_reason == ExitReason.USER_STOPPED.value
        assert loop.pid is None
        assert len(stopped) == 1
        assert manager.get_process(loop.id) is None

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, manager, issue, work_dir):
        """Pause suspends the process and resume continues it."""
        adapter = ScriptAdapter(script("started", sleep=30))
        loop = await create(manager, issue, work_dir, adapter)
        task = await manager.start_loop(loop.id)
        await wait_until(lambda: manager.get_process(loop.id) is not None)

        paused = await manager.pause_loop(loop.id)
        assert paused.status == LoopStatus.PAUSED
        assert paused.paused_at is not None

        resumed = await manager.resume_loop(loop.id)
        assert resumed.status == LoopStatus.RUNNING
        assert resumed.paused_at is None

        await manager.stop_loop(loop.id)
        await finish(task)

    @pytest.mark.asyncio
    async def test_stop_paused_loop(self, manager, issue, work_dir):
        """A suspended process still terminates when stopped."""
        adapter = ScriptAdapter(script("started", sleep=30))
        loop = await create(manager, issue, work_dir, adapter)
        task = await manager.start_loop(loop.id)
        await wait_until(lambda: manager.get_process(loop.id) is not None)

        await manager.pause_loop(loop.id)
        await manager.stop_loop(loop.id)
        await finish(task)

        assert (await manager.get_loop(loop.id)).status == LoopStatus.STOPPED

    @pytest.mark.asyncio
    async def test_control_without_process_fails(self, manager, issue, work_dir):
        """Control operations need a tracked process."""
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        with pytest.raises(NoActiveProcessError):
            await manager.pause_loop(loop.id)
        with pytest.raises(NoActiveProcessError):
            await manager.resume_loop(loop.id)
        with pytest.raises(NoActiveProcessError):
            await manager.stop_loop(loop.id)
        with pytest.raises(NoActiveProcessError):
            await manager.send_intervention(loop.id, "hello")

    @pytest.mark.asyncio
    async def test_intervention_written_to_stdin(self, manager, issue, work_dir):
        """Messages reach the agent's stdin."""
        source = "\n".join(
            [
                "import sys",
                "line = sys.stdin.readline()",
                "print('GOT:' + line.strip(), flush=True)",
                f"print({MARKER!r}, flush=True)",
            ]
        )
        adapter = ScriptAdapter(source)
        loop = await create(manager, issue, work_dir, adapter)
        task = await manager.start_loop(loop.id)
        await wait_until(lambda: manager.get_process(loop.id) is not None)

        await manager.send_intervention(loop.id, "use the new API")
        await finish(task)

        entries = await manager.logs.read_logs(loop.id)
        assert any(e.type == LogType.OPERATOR and e.content == "[INTERVENTION] use the new API" for e in entries)
        assert any(e.type == LogType.AGENT and e.content == "GOT:use the new API" for e in entries)

    @pytest.mark.asyncio
    async def test_interrupting_intervention_becomes_next_prompt(self, manager, issue, work_dir):
        """An interrupt kills the iteration and re-prompts with the message."""
        adapter = ScriptAdapter(script("started", sleep=30), script(MARKER))
        loop = await create(manager, issue, work_dir, adapter)
        task = await manager.start_loop(loop.id)
        await wait_until(lambda: manager.get_process(loop.id) is not None)

        await manager.send_intervention(loop.id, "switch to plan B", interrupt=True)
        await finish(task)

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.COMPLETED
        assert loop.iteration == 2
        prompt = adapter.calls[1][1]
        assert prompt.startswith("OPERATOR INTERVENTION:")
        assert "switch to plan B" in prompt

    @pytest.mark.asyncio
    async def test_kill_all_leaves_loop_for_reconciliation(self, manager, issue, work_dir):
        """Shutdown kills processes without rewriting loop status."""
        adapter = ScriptAdapter(script("started", sleep=30))
        loop = await create(manager, issue, work_dir, adapter)
        task = await manager.start_loop(loop.id)
        await wait_until(lambda: manager.get_process(loop.id) is not None)

        manager.kill_all()
        await finish(task)

        assert (await manager.get_loop(loop.id)).status == LoopStatus.RUNNING

    @pytest.mark.asyncio
    async def test_rejected_intervention_is_not_logged(self, manager, issue, work_dir):
        """An interrupt on a paused loop fails without an operator log entry."""
        adapter = ScriptAdapter(script("started", sleep=30))
        loop = await create(manager, issue, work_dir, adapter)
        task = await manager.start_loop(loop.id)
        await wait_until(lambda: manager.get_process(loop.id) is not None)
        await manager.pause_loop(loop.id)

        with pytest.raises(InvalidTransitionError):
            await manager.send_intervention(loop.id, "too late", interrupt=True)

        entries = await manager.logs.read_logs(loop.id)
        assert not any(e.type == LogType.OPERATOR for e in entries)

        await manager.stop_loop(loop.id)
        await finish(task)

    @pytest.mark.asyncio
    async def test_paused_loop_does_not_spawn_next_iteration(
        self, store, logs, registry, bus, config, issue, work_dir
    ):
        """With a cooperative pause the run waits for resume once the agent exits."""
        manager = LoopManager(store, logs, registry, bus, config, StdinSuspender())
        first = "\n".join(
            [
                "import sys",
                "print('started', flush=True)",
                "print('got ' + sys.stdin.readline().strip(), flush=True)",
            ]
        )
        adapter = ScriptAdapter(first, script(MARKER))
        loop = await create(manager, issue, work_dir, adapter)
        task = await manager.start_loop(loop.id)
        await wait_until(lambda: manager.get_process(loop.id) is not None)

        await manager.pause_loop(loop.id)
        await wait_for_log(logs, loop.id, "Loop is paused, waiting for resume")
        await asyncio.sleep(0.2)
        assert manager.get_process(loop.id) is None
        assert len(adapter.calls) == 1
        assert not task.done()
        assert (await manager.get_loop(loop.id)).status == LoopStatus.PAUSED

        assert await manager.resume_paused_loop(loop.id) is None
        await finish(task)

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.COMPLETED
        assert loop.iteration == 2
        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_stop_while_waiting_for_resume(self, store, logs, registry, bus, config, issue, work_dir):
        """Stopping a paused run that is between iterations ends it."""
        manager = LoopManager(store, logs, registry, bus, config, StdinSuspender())
        first = "import sys\nprint('started', flush=True)\nsys.stdin.readline()"
        adapter = ScriptAdapter(first, script(MARKER))
        loop = await create(manager, issue, work_dir, adapter)
        task = await manager.start_loop(loop.id)
        await wait_until(lambda: manager.get_process(loop.id) is not None)

        await manager.pause_loop(loop.id)
        await wait_for_log(logs, loop.id, "Loop is paused, waiting for resume")
        await manager.stop_loop(loop.id)
        await finish(task)

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.STOPPED
        assert len(adapter.calls) == 1


class TestRecovery:
    """Test retry, orphan reconciliation and cross-session resume."""

    @pytest.mark.asyncio
    async def test_retry_errored_loop(self, manager, issue, work_dir):
        """Retry clears the error and keeps the iteration count."""
        adapter = ScriptAdapter(script("boom", exit_code=1), script(MARKER))
        loop = await create(manager, issue, work_dir, adapter)
        await finish(await manager.start_loop(loop.id))
        assert (await manager.get_loop(loop.id)).status == LoopStatus.ERROR

        await finish(await manager.retry_loop(loop.id))

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.COMPLETED
        assert loop.error is None
        assert loop.iteration == 2

    @pytest.mark.asyncio
    async def test_retry_queued_loop_is_rejected(self, manager, issue, work_dir):
        """Only errored or stopped loops can be retried."""
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        with pytest.raises(InvalidTransitionError):
            await manager.retry_loop(loop.id)

    @pytest.mark.asyncio
    async def test_mark_orphaned_loops(self, manager, issue, work_dir):
        """Running loops without a process become paused from a previous session."""
        running = await manager.create_loop(issue, "claude", False, work_dir)
        queued = await manager.create_loop(issue, "claude", False, work_dir)
        await manager.store.update_loop(running.id, status=LoopStatus.RUNNING, pid=dead_pid())

        assert await manager.mark_orphaned_loops() == 1
        assert await manager.mark_orphaned_loops() == 0

        running = await manager.get_loop(running.id)
        assert running.status == LoopStatus.PAUSED
        assert running.pid is None
        assert running.paused_from_previous_session is True
        assert running.paused_at is not None
        assert (await manager.get_loop(queued.id)).status == LoopStatus.QUEUED

    @posix_only
    @pytest.mark.asyncio
    async def test_mark_orphaned_loops_skips_live_pid(self, manager, issue, work_dir):
        """A loop whose agent pid is alive belongs to another alex process."""
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        await manager.store.update_loop(loop.id, status=LoopStatus.RUNNING, pid=os.getpid())

        assert await manager.mark_orphaned_loops() == 0

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.RUNNING
        assert loop.pid == os.getpid()
        assert loop.paused_from_previous_session is None

    @pytest.mark.asyncio
    async def test_resume_paused_loop_continues_session(self, manager, issue, work_dir):
        """A cross-session resume continues the stored session with a resume prompt."""
        adapter = ScriptAdapter(script(MARKER))
        loop = await create(manager, issue, work_dir, adapter, max_iterations=5)
        await manager.store.update_loop(
            loop.id, status=LoopStatus.RUNNING, iteration=2, paused_session_id="sess-42"
        )
        await manager.mark_orphaned_loops()

        task = await manager.resume_paused_loop(loop.id)
        assert task is not None
        await finish(task)

        loop = await manager.get_loop(loop.id)
        assert loop.status == LoopStatus.COMPLETED
        assert loop.iteration == 3
        assert loop.paused_from_previous_session is None
        kind, prompt, session_id = adapter.calls[0]
        assert kind == "continue"
        assert session_id == "sess-42"
        assert prompt.startswith("Resuming from pause.")
        assert "Greeting is printed" in prompt

    @pytest.mark.asyncio
    async def test_resume_requires_paused_loop(self, manager, issue, work_dir):
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        with pytest.raises(InvalidTransitionError):
            await manager.resume_paused_loop(loop.id)

    @pytest.mark.asyncio
    async def test_discard_paused_loop(self, manager, issue, work_dir):
        """Discarding removes an orphaned loop."""
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        await manager.store.update_loop(loop.id, status=LoopStatus.RUNNING)
        await manager.mark_orphaned_loops()

        await manager.discard_paused_loop(loop.id)
        assert await manager.list_loops() == []

    @pytest.mark.asyncio
    async def test_discard_queued_loop_is_rejected(self, manager, issue, work_dir):
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        with pytest.raises(InvalidTransitionError):
            await manager.discard_paused_loop(loop.id)


class ReviewerAdapter(ScriptAdapter):
    type = "reviewer"
    display_name = "Reviewer"


async def completed_loop(manager, issue, work_dir):
    adapter = ScriptAdapter(script(MARKER))
    loop = await create(manager, issue, work_dir, adapter)
    await finish(await manager.start_loop(loop.id))
    return await manager.get_loop(loop.id)


class TestReview:
    """Test cross-agent review and follow-up loops."""

    @pytest.mark.asyncio
    async def test_create_review_loop(self, manager, issue, work_dir):
        """A different agent reviews the completed loop in the same directory."""
        original = await completed_loop(manager, issue, work_dir)
        manager.registry.register(ReviewerAdapter(script(MARKER)))

        review = await manager.create_review_loop(original.id)
        assert review.agent == "reviewer"
        assert review.status == LoopStatus.QUEUED
        assert review.is_review_loop is True
        assert review.parent_loop_id == original.id
        assert review.working_dir == original.working_dir
        assert review.max_iterations == REVIEW_MAX_ITERATIONS
        assert review.issue.title == "[Review] Add greeting"
        assert "Another agent (fake)" in review.issue.body
        assert [c.text for c in review.issue.acceptance_criteria] == REVIEW_CRITERIA
        assert not any(c.completed for c in review.issue.acceptance_criteria)

        original = await manager.get_loop(original.id)
        assert original.review_loop_id == review.id
        contents = [e.content for e in await manager.logs.read_logs(original.id)]
        assert f"Review loop created: {review.id} (reviewer: reviewer)" in contents
        contents = [e.content for e in await manager.logs.read_logs(review.id)]
        assert f"Review loop for: {original.id}" in contents

    @pytest.mark.asyncio
    async def test_review_requires_completed_loop(self, manager, issue, work_dir):
        loop = await manager.create_loop(issue, "fake", False, work_dir)
        manager.registry.register(ReviewerAdapter(script(MARKER)))
        with pytest.raises(InvalidTransitionError):
            await manager.create_review_loop(loop.id)

    @pytest.mark.asyncio
    async def test_loop_is_reviewed_once(self, manager, issue, work_dir):
        original = await completed_loop(manager, issue, work_dir)
        manager.registry.register(ReviewerAdapter(script(MARKER)))
        await manager.create_review_loop(original.id)

        with pytest.raises(ValidationError) as exc_info:
            await manager.create_review_loop(original.id)
        assert "already has a review" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_reviewer_must_differ(self, manager, issue, work_dir):
        """The loop's own agent cannot review it."""
        original = await completed_loop(manager, issue, work_dir)
        with pytest.raises(ValidationError):
            await manager.create_review_loop(original.id)
        with pytest.raises(ValidationError):
            await manager.create_review_loop(original.id, "fake")
        assert (await manager.get_loop(original.id)).review_loop_id is None

    @pytest.mark.asyncio
    async def test_unavailable_reviewer_is_skipped(self, manager, issue, work_dir):
        original = await completed_loop(manager, issue, work_dir)
        manager.registry.register(ReviewerAdapter(script(MARKER), available=False))
        assert await manager.get_alternate_agent("fake") is None
        with pytest.raises(ValidationError):
            await manager.create_review_loop(original.id)

    @pytest.mark.asyncio
    async def test_follow_up_from_review(self, manager, issue, work_dir):
        """Review feedback is appended to the original task with criteria reset."""
        original = await completed_loop(manager, issue, work_dir)
        await manager.set_criterion(original.id, 0, True)
        manager.registry.register(ReviewerAdapter(script("greet() ignores the locale", MARKER)))
        review = await manager.create_review_loop(original.id)
        await finish(await manager.start_loop(review.id))

        follow_up = await manager.create_follow_up_from_review(review.id)
        assert follow_up.agent == "fake"
        assert follow_up.status == LoopStatus.QUEUED
        assert follow_up.parent_loop_id == original.id
        assert follow_up.is_review_loop is None
        assert follow_up.working_dir == original.working_dir
        assert follow_up.max_iterations == original.max_iterations
        assert follow_up.issue.title == "[Follow-up] Add greeting"
        assert follow_up.issue.body.startswith("Print a greeting on startup.\n\n## Review Feedback\n\n")
        assert "greet() ignores the locale" in follow_up.issue.body
        assert [c.text for c in follow_up.issue.acceptance_criteria] == [
            "Greeting is printed",
            "Tests cover the greeting",
        ]
        assert not any(c.completed for c in follow_up.issue.acceptance_criteria)

        contents = [e.content for e in await manager.logs.read_logs(original.id)]
        assert f"Follow-up loop created from review: {follow_up.id}" in contents

    @pytest.mark.asyncio
    async def test_follow_up_requires_review_loop(self, manager, issue, work_dir):
        loop = await manager.create_loop(issue, "fake", False, work_dir)
        with pytest.raises(ValidationError):
            await manager.create_follow_up_from_review(loop.id)

    @pytest.mark.asyncio
    async def test_auto_request_review(self, manager, issue, work_dir):
        """Completed loops get a review queued when enabled."""
        manager.config.auto_request_review = True
        manager.registry.register(ReviewerAdapter(script(MARKER)))
        original = await completed_loop(manager, issue, work_dir)

        assert original.review_loop_id is not None
        review = await manager.get_loop(original.review_loop_id)
        assert review.agent == "reviewer"
        assert review.status == LoopStatus.QUEUED

        await finish(await manager.start_loop(review.id))
        assert (await manager.get_loop(review.id)).review_loop_id is None
        assert len(await manager.list_loops()) == 2


class TestManualCompletion:
    """Test operator completion and bookkeeping operations."""

    @pytest.mark.asyncio
    async def test_mark_manual_complete(self, manager, issue, work_dir):
        """Errored loops can be completed by an operator with a note."""
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        await manager.store.update_loop(loop.id, status=LoopStatus.ERROR, error="Agent exited with code 1")

        loop = await manager.mark_manual_complete(loop.id, "fixed by hand")
        assert loop.status == LoopStatus.COMPLETED
        assert loop.exit_reason == ExitReason.MANUAL_COMPLETE.value
        assert loop.error is None

        contents = [e.content for e in await manager.logs.read_logs(loop.id)]
        assert "Manually marked complete by operator: fixed by hand" in contents

    @pytest.mark.asyncio
    async def test_mark_manual_complete_without_note(self, manager, issue, work_dir):
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        await manager.store.update_loop(loop.id, status=LoopStatus.STOPPED)
        await manager.mark_manual_complete(loop.id)

        contents = [e.content for e in await manager.logs.read_logs(loop.id)]
        assert "Manually marked complete by operator: none" in contents

    @pytest.mark.asyncio
    async def test_mark_manual_complete_queued_is_rejected(self, manager, issue, work_dir):
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        with pytest.raises(InvalidTransitionError):
            await manager.mark_manual_complete(loop.id)

    @pytest.mark.asyncio
    async def test_hidden_and_active_loop(self, manager, issue, work_dir):
        """Hidden flag and active selection are persisted."""
        loop = await manager.create_loop(issue, "claude", False, work_dir)
        loop = await manager.set_hidden(loop.id, True)
        assert loop.hidden is True

        await manager.set_active_loop(loop.id)
        assert (await manager.store.load()).active_loop_id == loop.id
        await manager.set_active_loop(None)
        assert (await manager.store.load()).active_loop_id is None


class TestEvents:
    """Test event ordering."""

    @pytest.mark.asyncio
    async def test_state_is_persisted_before_events(self, manager, issue, work_dir, bus):
        """Observers see the new status when they are notified."""
        seen = {}

        async def on_event(event):
            if event.loop_id:
                seen[event.type] = (await manager.get_loop(event.loop_id)).status

        bus.subscribe(None, on_event)
        adapter = ScriptAdapter(script(MARKER))
        loop = await create(manager, issue, work_dir, adapter)
        await finish(await manager.start_loop(loop.id))

        assert seen[EventType.LOOP_STARTED] == LoopStatus.RUNNING
        assert seen[EventType.LOOP_COMPLETED] == LoopStatus.COMPLETED


class TestHelpers:
    def test_describe_exit(self):
        assert describe_exit(2) == "Agent exited with code 2"
        assert describe_exit(-9) == "Agent terminated by SIGKILL"
        assert describe_exit(None) == "Agent exit status unknown"

    @posix_only
    def test_pid_alive(self):
        assert pid_alive(os.getpid()) is True
        assert pid_alive(dead_pid()) is False

    def test_manager_defaults(self, store, logs, registry):
        """Bus and config are created when omitted."""
        manager = LoopManager(store, logs, registry)
        assert manager.bus is not None
        assert manager.config.max_iterations == 100
        assert manager.rate_limiter.calls_per_hour == 100
