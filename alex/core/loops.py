"""Loop lifecycle manager.

Owns the live agent processes and drives each loop through its states:

    queued -> running -> completed | error | stopped
    running <-> paused
    error | stopped -> queued (retry)

A run is a sequence of iterations, one agent process each. After every
iteration the output is analyzed, fed to the circuit breaker and checked for
exit conditions; the next iteration continues the agent's session when the
adapter reported a session id.

Every transition is written to the state store before its event is published.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from asyncio.subprocess import PIPE, Process
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from alex.adapters.base import AdapterRegistry, AgentAdapter, SpawnArgs
from alex.config import AlexConfig
from alex.core.analyzer import (
    COMPLETION_MARKER,
    AnalysisResult,
    GitBaseline,
    analyze_response,
    capture_git_baseline,
    should_exit,
)
from alex.core.circuit_breaker import (
    CircuitBreakerState,
    create_circuit_breaker,
    get_halt_reason,
    get_status_summary as get_circuit_status,
    record_iteration,
    reset_circuit_breaker,
    should_halt,
)
from alex.core.events import EventBus, EventType
from alex.core.logs import LogStore
from alex.core.prompts import (
    DEFAULT_FOLLOW_UP_PROMPT,
    REVIEW_CRITERIA,
    CriterionUpdate,
    build_default_resume_prompt,
    build_intervention_prompt,
    build_prompt_from_issue,
    build_remaining_criteria_prompt,
    build_review_body,
    parse_criterion_tags,
)
from alex.core.rate_limiter import (
    check_rate_limit,
    create_rate_limiter,
    get_status_summary as get_rate_limit_status,
    record_call,
    wait_for_rate_limit,
)
from alex.core.state import (
    StateStore,
    generate_loop_id,
    get_loop,
    remove_loop,
    set_active_loop,
    update_loop,
)
from alex.core.suspend import (
    ProcessSuspender,
    SignalSuspender,
    default_suspender,
    signal_process_group,
)
from alex.core.types import (
    AcceptanceCriterion,
    AppState,
    ExitReason,
    Issue,
    LogType,
    Loop,
    LoopStatus,
    utcnow,
)
from alex.utils.exceptions import (
    AdapterUnavailableError,
    AlexError,
    InvalidTransitionError,
    NoActiveProcessError,
    ProcessError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 4096
FOLLOW_UP_CONTEXT_CHARS = 500
REVIEW_MAX_ITERATIONS = 10
REVIEW_SUMMARY_CHARS = 2000

COMPLETION_EXITS = {
    ExitReason.COMPLETION_SIGNAL.value,
    ExitReason.EXIT_SIGNAL.value,
    ExitReason.PROJECT_COMPLETE.value,
}
ERROR_EXITS = {ExitReason.ERROR.value, ExitReason.CIRCUIT_BREAKER.value}


@dataclass
class LoopIterationState:
    """In-memory state of one run of a loop."""

    iteration: int
    iteration_limit: int
    fresh_prompt: str
    session_id: str | None = None
    circuit_breaker: CircuitBreakerState = field(default_factory=create_circuit_breaker)
    analysis_history: list[AnalysisResult] = field(default_factory=list)
    exit_reason: str | None = None
    error: str | None = None
    criterion_buffer: str = ""
    pending_intervention: str | None = None
    stop_requested: bool = False
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    # Cleared while the loop is paused; gates the next spawn
    unpaused: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        self.unpaused.set()

    def request_stop(self) -> None:
        self.stop_requested = True
        self.stop_event.set()
        self.unpaused.set()


@dataclass
class IterationResult:
    """Output and exit status of one agent process."""

    chunks: list[str] = field(default_factory=list)
    exit_code: int | None = None
    marker_seen: bool = False
    stdout_tail: str = ""

    @property
    def output(self) -> str:
        return "".join(self.chunks)


def describe_exit(exit_code: int | None) -> str:
    if exit_code is None:
        return "Agent exit status unknown"
    if exit_code < 0:
        try:
            name = signal.Signals(-exit_code).name
        except ValueError:
            name = f"signal {-exit_code}"
        return f"Agent terminated by {name}"
    return f"Agent exited with code {exit_code}"


def pid_alive(pid: int) -> bool:
    """Whether a process with ``pid`` exists. Always False off POSIX."""
    if os.name != "posix":
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    return True


class LoopManager:
    """Creates loops and drives their agent processes.

    Args:
        store: Persistent loop state.
        logs: Per-loop log files.
        registry: Adapters available to loops.
        bus: Event bus observers subscribe to.
        config: Engine settings.
        suspender: Pause/resume strategy; platform default when omitted.
    """

    def __init__(
        self,
        store: StateStore,
        logs: LogStore,
        registry: AdapterRegistry,
        bus: EventBus | None = None,
        config: AlexConfig | None = None,
        suspender: ProcessSuspender | None = None,
    ):
        self.store = store
        self.logs = logs
        self.registry = registry
        self.bus = bus or EventBus()
        self.config = config or AlexConfig()
        self.suspender = suspender or default_suspender()
        self.rate_limiter = create_rate_limiter(self.config.calls_per_hour)

        self._processes: dict[str, Process] = {}
        self._states: dict[str, LoopIterationState] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # Queries

    async def get_loop(self, loop_id: str) -> Loop:
        return await self.store.get_loop(loop_id)

    async def list_loops(self) -> list[Loop]:
        return await self.store.list_loops()

    def get_process(self, loop_id: str) -> Process | None:
        return self._processes.get(loop_id)

    def get_iteration_state(self, loop_id: str) -> LoopIterationState | None:
        return self._states.get(loop_id)

    def is_active(self, loop_id: str) -> bool:
        """True while a run task exists for the loop."""
        task = self._tasks.get(loop_id)
        return task is not None and not task.done()

    # Creation and start

    async def create_loop(
        self,
        issue: Issue,
        agent: str,
        skip_permissions: bool,
        working_dir: str | Path,
        max_iterations: int | None = None,
        parent_loop_id: str | None = None,
        is_review_loop: bool | None = None,
    ) -> Loop:
        """Create and persist a queued loop.

        Raises:
            ValidationError: If ``working_dir`` is not a directory or
                ``max_iterations`` is below 1.
        """
        path = Path(working_dir)
        if not path.is_dir():
            raise ValidationError(
                f"Working directory does not exist: {working_dir}",
                field="working_dir",
                value=working_dir,
            )
        if max_iterations is None:
            max_iterations = self.config.max_iterations
        if max_iterations < 1:
            raise ValidationError(
                "max_iterations must be at least 1", field="max_iterations", value=max_iterations
            )

        loop = Loop(
            id=generate_loop_id(),
            issue=issue,
            agent=agent,
            skip_permissions=skip_permissions,
            working_dir=str(path.resolve()),
            max_iterations=max_iterations,
            parent_loop_id=parent_loop_id,
            is_review_loop=is_review_loop,
        )
        await self.store.add_loop(loop)
        await self.logs.system(loop.id, f"Loop created for issue: {issue.title}")
        if is_review_loop and parent_loop_id:
            await self.logs.system(loop.id, f"Review loop for: {parent_loop_id}")
        logger.info(f"Created loop {loop.id} ({agent}) in {loop.working_dir}")
        return loop

    async def _resolve_adapter(self, loop: Loop) -> AgentAdapter:
        adapter = self.registry.get(loop.agent)
        if adapter is None:
            raise AdapterUnavailableError(loop.agent, "no adapter registered", loop_id=loop.id)
        if not await asyncio.to_thread(adapter.is_available):
            raise AdapterUnavailableError(loop.agent, "agent CLI is not available", loop_id=loop.id)
        return adapter

    def _ensure_idle(self, loop: Loop, operation: str) -> None:
        if self.is_active(loop.id) or loop.id in self._processes:
            raise InvalidTransitionError(loop.id, loop.status.value, operation)

    async def start_loop(self, loop_id: str) -> asyncio.Task:
        """Start a run for a queued loop.

        Returns:
            The task driving the run; it finishes when the loop leaves
            ``running``.

        Raises:
            LoopNotFoundError: If the loop does not exist.
            InvalidTransitionError: If the loop is running, paused or completed.
            AdapterUnavailableError: If the agent cannot run; the loop stays queued.
        """
        loop = await self.store.get_loop(loop_id)
        if loop.status in (LoopStatus.RUNNING, LoopStatus.PAUSED, LoopStatus.COMPLETED):
            raise InvalidTransitionError(loop_id, loop.status.value, "start")
        self._ensure_idle(loop, "start")

        adapter = await self._resolve_adapter(loop)
        baseline = await asyncio.to_thread(capture_git_baseline, loop.working_dir)
        prompt = build_prompt_from_issue(loop.issue)
        state = LoopIterationState(
            iteration=loop.iteration,
            iteration_limit=loop.iteration + loop.max_iterations,
            fresh_prompt=prompt,
        )

        loop = await self.store.update_loop(
            loop_id,
            status=LoopStatus.RUNNING,
            started_at=utcnow(),
            ended_at=None,
            error=None,
            exit_reason=None,
            pid=None,
        )
        await self.logs.system(loop_id, f"Starting {loop.agent} agent (max iterations: {loop.max_iterations})")
        if baseline is not None:
            await self.logs.system(
                loop_id, f"Git baseline captured: {len(baseline.initial_dirty_files)} dirty files tracked"
            )
        await self.bus.emit(EventType.LOOP_STARTED, loop_id, agent=loop.agent)
        logger.info(f"Loop {loop_id} started with {loop.agent}")

        return self._spawn_run(loop_id, adapter, prompt, state, baseline)

    def _spawn_run(
        self,
        loop_id: str,
        adapter: AgentAdapter,
        prompt: str,
        state: LoopIterationState,
        baseline: GitBaseline | None,
    ) -> asyncio.Task:
        self._states[loop_id] = state
        task = asyncio.create_task(self._run(loop_id, adapter, prompt, state, baseline))
        self._tasks[loop_id] = task

        def _done(t: asyncio.Task) -> None:
            if self._tasks.get(loop_id) is t:
                del self._tasks[loop_id]

        task.add_done_callback(_done)
        return task

    # Run driver

    async def _run(
        self,
        loop_id: str,
        adapter: AgentAdapter,
        prompt: str,
        state: LoopIterationState,
        baseline: GitBaseline | None,
    ) -> None:
        try:
            await self._iterate(loop_id, adapter, prompt, state, baseline)
        except asyncio.CancelledError:
            state.request_stop()
            raise
        except Exception as e:
            message = e.message if isinstance(e, AlexError) else str(e)
            if not isinstance(e, (AlexError, OSError)):
                logger.exception(f"Unexpected failure in loop {loop_id}")
            state.exit_reason = ExitReason.ERROR.value
            state.error = message
            await self._safe_log(loop_id, LogType.ERROR, f"Loop error: {message}")
        finally:
            self._states.pop(loop_id, None)

        await self._finalize(loop_id, state)

    async def _iterate(
        self,
        loop_id: str,
        adapter: AgentAdapter,
        prompt: str,
        state: LoopIterationState,
        baseline: GitBaseline | None,
    ) -> None:
        current_prompt = prompt

        while state.iteration < state.iteration_limit:
            if not state.unpaused.is_set():
                await self.logs.system(loop_id, "Loop is paused, waiting for resume before next iteration")
                await state.unpaused.wait()

            if state.stop_requested:
                state.exit_reason = ExitReason.USER_STOPPED.value
                break

            if should_halt(state.circuit_breaker):
                reason = get_halt_reason(state.circuit_breaker)
                await self.logs.system(loop_id, f"Circuit breaker OPEN: {reason}")
                state.exit_reason = ExitReason.CIRCUIT_BREAKER.value
                state.error = reason
                break

            if check_rate_limit(self.rate_limiter) < 0:
                await self.logs.system(
                    loop_id, f"Rate limit reached. {get_rate_limit_status(self.rate_limiter)}"
                )
                await self._wait_for_rate_limit(state)
                continue

            state.iteration += 1
            loop = await self.store.update_loop(loop_id, iteration=state.iteration)
            await self.logs.system(loop_id, f"--- Iteration {state.iteration}/{state.iteration_limit} ---")
            await self.bus.emit(EventType.LOOP_ITERATION, loop_id, iteration=state.iteration)

            used_continuation = state.session_id is not None
            if state.session_id is not None:
                await self.logs.system(loop_id, f"Continuing session: {state.session_id[:8]}...")
                spawn_args = adapter.build_continue_args(
                    state.session_id, current_prompt, loop.skip_permissions, loop.working_dir
                )
            else:
                spawn_args = adapter.build_spawn_args(current_prompt, loop.skip_permissions, loop.working_dir)

            result = await self._run_process(loop, spawn_args, state)
            self.rate_limiter = record_call(self.rate_limiter)
            output = result.output

            session_id = adapter.extract_session_id(output)
            if session_id:
                if session_id != state.session_id:
                    await self.logs.system(loop_id, f"Session established: {session_id[:8]}...")
                state.session_id = session_id
            elif state.session_id is not None:
                await self.logs.system(loop_id, "No session id in output, next iteration starts fresh")
                state.session_id = None

            if state.stop_requested:
                state.exit_reason = ExitReason.USER_STOPPED.value
                break

            if state.pending_intervention is not None:
                message = state.pending_intervention
                state.pending_intervention = None
                # Interrupted output is truncated; do not count it against the breaker
                state.circuit_breaker = create_circuit_breaker()
                await self.logs.system(loop_id, "Injecting operator intervention into next prompt")
                current_prompt = build_intervention_prompt(message)
                continue

            if result.marker_seen:
                follow_up = await self._completion_follow_up(loop_id)
                if follow_up is None:
                    state.exit_reason = ExitReason.COMPLETION_SIGNAL.value
                    break
                current_prompt = follow_up
                continue

            if result.exit_code != 0:
                description = describe_exit(result.exit_code)
                if used_continuation:
                    await self.logs.error(loop_id, f"{description}; continuation failed, starting a fresh session")
                    state.session_id = None
                    current_prompt = state.fresh_prompt
                    continue
                await self.logs.error(loop_id, description)
                state.exit_reason = ExitReason.ERROR.value
                state.error = description
                break

            analysis = await asyncio.to_thread(analyze_response, output, loop.working_dir, baseline)
            state.analysis_history.append(analysis)
            await self.logs.system(
                loop_id,
                f"Analysis: completion={analysis.completion_indicators}, progress={analysis.has_progress}, "
                f"test_only={analysis.is_test_only}, exit_signal={analysis.exit_signal}",
            )
            await self.bus.emit(EventType.LOOP_ANALYSIS, loop_id, **analysis.to_dict())

            state.circuit_breaker = record_iteration(
                state.circuit_breaker, analysis, self.config.thresholds
            )
            await self.logs.system(loop_id, f"Circuit: {get_circuit_status(state.circuit_breaker)}")

            exit_reason = should_exit(
                analysis,
                state.circuit_breaker.consecutive_test_only,
                self.config.test_only_threshold,
            )
            if exit_reason in COMPLETION_EXITS:
                follow_up = await self._completion_follow_up(loop_id)
                if follow_up is None:
                    state.exit_reason = exit_reason
                    await self.logs.system(loop_id, f"Exit condition met: {exit_reason}")
                    break
                current_prompt = follow_up
                continue
            if exit_reason:
                state.exit_reason = exit_reason
                await self.logs.system(loop_id, f"Exit condition met: {exit_reason}")
                break

            current_prompt = (
                adapter.build_follow_up_prompt(output[:FOLLOW_UP_CONTEXT_CHARS])
                or DEFAULT_FOLLOW_UP_PROMPT
            )

        if state.exit_reason is None and state.iteration >= state.iteration_limit:
            state.exit_reason = ExitReason.MAX_ITERATIONS.value
            await self.logs.system(loop_id, f"Max iterations reached ({state.iteration})")

    async def _completion_follow_up(self, loop_id: str) -> str | None:
        """Prompt listing outstanding criteria, or None when the loop may complete."""
        if not self.config.require_all_criteria:
            return None
        loop = await self.store.get_loop(loop_id)
        if loop.issue.all_criteria_complete():
            return None
        remaining = loop.issue.remaining_criteria()
        await self.logs.system(loop_id, f"Completion signalled but {len(remaining)} criteria remain")
        return build_remaining_criteria_prompt(loop.issue.acceptance_criteria)

    async def _wait_for_rate_limit(self, state: LoopIterationState) -> None:
        waiter = asyncio.ensure_future(wait_for_rate_limit(self.rate_limiter))
        stopper = asyncio.ensure_future(state.stop_event.wait())
        try:
            await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            stopper.cancel()

    async def _run_process(
        self,
        loop: Loop,
        spawn_args: SpawnArgs,
        state: LoopIterationState,
    ) -> IterationResult:
        """Run one agent process to completion, streaming its output."""
        kwargs: dict[str, Any] = {}
        if os.name == "posix":
            # Own process group so signals reach the agent's children
            kwargs["start_new_session"] = True

        try:
            process = await asyncio.create_subprocess_exec(
                *spawn_args.argv,
                cwd=loop.working_dir,
                stdin=PIPE,
                stdout=PIPE,
                stderr=PIPE,
                **kwargs,
            )
        except OSError as e:
            raise ProcessError(
                f"Failed to start {spawn_args.cmd}: {e}", loop_id=loop.id, cause=e
            ) from e

        self._processes[loop.id] = process
        if state.stop_requested:
            # Stopped while the process was being spawned
            self._kill(process)
        result = IterationResult()
        try:
            await self.store.update_loop(loop.id, pid=process.pid)
            logger.debug(f"Loop {loop.id} spawned pid {process.pid}: {spawn_args.cmd}")
            await asyncio.gather(
                self._pump(loop.id, process, process.stdout, "stdout", result, state),
                self._pump(loop.id, process, process.stderr, "stderr", result, state),
            )
            result.exit_code = await process.wait()
        finally:
            self._processes.pop(loop.id, None)
            if process.returncode is None:
                self._kill(process)

        await self.store.update_loop(loop.id, pid=None)
        return result

    async def _pump(
        self,
        loop_id: str,
        process: Process,
        stream: asyncio.StreamReader | None,
        stream_name: str,
        result: IterationResult,
        state: LoopIterationState,
    ) -> None:
        if stream is None:
            return

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(STREAM_CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                result.chunks.append(text)
                if stream_name == "stdout":
                    await self._check_marker(loop_id, process, result, text)

                updates, state.criterion_buffer = parse_criterion_tags(text, state.criterion_buffer)
                if updates:
                    await self._apply_criterion_updates(loop_id, updates, "agent")

                pending += text
                *lines, pending = pending.split("\n")
                for line in lines:
                    await self._record_output(loop_id, line.rstrip("\r"), stream_name)

            if not chunk:
                if pending:
                    await self._record_output(loop_id, pending, stream_name)
                return

    async def _check_marker(
        self,
        loop_id: str,
        process: Process,
        result: IterationResult,
        text: str,
    ) -> None:
        window = result.stdout_tail + text
        result.stdout_tail = window[-(len(COMPLETION_MARKER) - 1):]
        if result.marker_seen or COMPLETION_MARKER not in window:
            return

        result.marker_seen = True
        await self.logs.system(loop_id, "Completion marker detected, terminating agent")
        self._terminate(process)

    async def _record_output(self, loop_id: str, line: str, stream_name: str) -> None:
        if not line.strip():
            return
        await self.logs.append(loop_id, LogType.AGENT, line)
        await self.bus.emit(EventType.LOOP_OUTPUT, loop_id, line=line, stream=stream_name)

    async def _finalize(self, loop_id: str, state: LoopIterationState) -> None:
        exit_reason = state.exit_reason or ExitReason.ERROR.value

        try:
            if exit_reason == ExitReason.USER_STOPPED.value:
                # Status was written by stop_loop, or left for orphan reconciliation after kill_all
                await self.store.update_loop(loop_id, pid=None, iteration=state.iteration)
                await self.logs.system(loop_id, f"Loop finished: stopped after {state.iteration} iterations")
                return

            status = LoopStatus.ERROR if exit_reason in ERROR_EXITS else LoopStatus.COMPLETED
            await self.store.update_loop(
                loop_id,
                status=status,
                exit_reason=exit_reason,
                error=state.error if status == LoopStatus.ERROR else None,
                ended_at=utcnow(),
                iteration=state.iteration,
                pid=None,
            )
            await self.logs.system(
                loop_id,
                f"Loop finished: status={status.value}, iterations={state.iteration}, exit_reason={exit_reason}",
            )
        except AlexError as e:
            logger.error(f"Failed to finalize loop {loop_id}: {e}")
            return

        logger.info(f"Loop {loop_id} finished: {status.value} ({exit_reason})")
        if status == LoopStatus.COMPLETED:
            await self.bus.emit(EventType.LOOP_COMPLETED, loop_id, exit_reason=exit_reason)
            if self.config.auto_request_review:
                await self._auto_request_review(loop_id)
        else:
            await self.bus.emit(
                EventType.LOOP_ERROR, loop_id, exit_reason=exit_reason, error=state.error
            )

    async def _safe_log(self, loop_id: str, type: LogType, content: str) -> None:
        try:
            await self.logs.append(loop_id, type, content)
        except AlexError as e:
            logger.warning(f"Could not write log for {loop_id}: {e}")

    # Signals

    def _terminate(self, process: Process) -> None:
        try:
            signal_process_group(process, signal.SIGTERM)
        except ProcessLookupError:
            logger.debug(f"Process {process.pid} already exited")

    def _kill(self, process: Process) -> None:
        try:
            signal_process_group(process, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)
        except ProcessLookupError:
            pass

    def _continue_if_stopped(self, process: Process) -> None:
        # A SIGSTOPped process cannot act on SIGTERM until continued
        if isinstance(self.suspender, SignalSuspender):
            try:
                signal_process_group(process, signal.SIGCONT)
            except ProcessLookupError:
                pass

    def _require_process(self, loop_id: str) -> Process:
        process = self._processes.get(loop_id)
        if process is None:
            raise NoActiveProcessError(loop_id)
        return process

    # Control operations

    async def pause_loop(self, loop_id: str) -> Loop:
        """Suspend the running agent process.

        Raises:
            NoActiveProcessError: If no process is tracked for the loop.
            InvalidTransitionError: If the loop is not running.
        """
        loop = await self.store.get_loop(loop_id)
        process = self._require_process(loop_id)
        if loop.status != LoopStatus.RUNNING:
            raise InvalidTransitionError(loop_id, loop.status.value, "pause")

        await self.suspender.suspend(process)
        state = self._states.get(loop_id)
        if state is not None:
            state.unpaused.clear()
        session_id = state.session_id if state else None
        loop = await self.store.update_loop(
            loop_id,
            status=LoopStatus.PAUSED,
            paused_at=utcnow(),
            paused_session_id=session_id,
        )
        suffix = f" (session: {session_id[:8]}...)" if session_id else ""
        await self.logs.system(loop_id, f"Loop paused{suffix}")
        await self.bus.emit(EventType.LOOP_PAUSED, loop_id)
        return loop

    async def resume_loop(self, loop_id: str) -> Loop:
        """Continue a paused run in this session.

        Resumes the suspended process, or releases a run that is waiting
        between iterations because its process exited while paused.

        Raises:
            NoActiveProcessError: If the loop has neither a process nor an active run.
            InvalidTransitionError: If the loop is not paused.
        """
        loop = await self.store.get_loop(loop_id)
        process = self._processes.get(loop_id)
        state = self._states.get(loop_id)
        if process is None and state is None:
            raise NoActiveProcessError(loop_id)
        if loop.status != LoopStatus.PAUSED:
            raise InvalidTransitionError(loop_id, loop.status.value, "resume")

        if process is not None:
            await self.suspender.resume(process)
        if state is not None:
            state.unpaused.set()
        loop = await self.store.update_loop(
            loop_id,
            status=LoopStatus.RUNNING,
            paused_at=None,
            paused_session_id=None,
        )
        await self.logs.system(loop_id, "Loop resumed")
        await self.bus.emit(EventType.LOOP_RESUMED, loop_id)
        return loop

    async def resume_paused_loop(self, loop_id: str) -> asyncio.Task | None:
        """Resume a paused loop, spawning a new process if the old one is gone.

        The new run continues the stored session when there is one and falls
        back to a fresh session built from the log summary and outstanding
        criteria.

        Returns:
            The new run task, or None when a live process was resumed.
        """
        loop = await self.store.get_loop(loop_id)
        if loop.status != LoopStatus.PAUSED:
            raise InvalidTransitionError(loop_id, loop.status.value, "resume")

        if loop_id in self._processes or loop_id in self._states:
            await self.resume_loop(loop_id)
            return None
        self._ensure_idle(loop, "resume")

        adapter = await self._resolve_adapter(loop)
        work_summary = await self.logs.generate_resume_summary(loop_id)
        remaining = loop.issue.remaining_criteria()
        prompt = adapter.build_resume_prompt(work_summary, remaining) or build_default_resume_prompt(
            work_summary, remaining
        )
        baseline = await asyncio.to_thread(capture_git_baseline, loop.working_dir)
        state = LoopIterationState(
            iteration=loop.iteration,
            iteration_limit=loop.max_iterations,
            fresh_prompt=prompt,
            session_id=loop.paused_session_id,
        )

        await self.store.update_loop(
            loop_id,
            status=LoopStatus.RUNNING,
            paused_at=None,
            paused_session_id=None,
            paused_from_previous_session=None,
            pid=None,
        )
        await self.logs.system(loop_id, "--- CROSS-SESSION RESUME ---")
        if state.session_id:
            await self.logs.system(loop_id, f"Attempting to continue session {state.session_id[:8]}...")
        await self.bus.emit(EventType.LOOP_RESUMED, loop_id)
        logger.info(f"Loop {loop_id} resumed from a previous session")

        return self._spawn_run(loop_id, adapter, prompt, state, baseline)

    async def stop_loop(self, loop_id: str) -> Loop:
        """Stop a loop and terminate its agent process.

        Raises:
            NoActiveProcessError: If the loop has neither a process nor an active run.
        """
        loop = await self.store.get_loop(loop_id)
        process = self._processes.get(loop_id)
        if process is None and not self.is_active(loop_id):
            raise NoActiveProcessError(loop_id)

        was_paused = loop.status == LoopStatus.PAUSED
        state = self._states.get(loop_id)
        if state is not None:
            state.request_stop()

        loop = await self.store.update_loop(
            loop_id,
            status=LoopStatus.STOPPED,
            exit_reason=ExitReason.USER_STOPPED.value,
            ended_at=utcnow(),
        )
        await self.logs.system(loop_id, "Loop stopped by user")
        await self.bus.emit(EventType.LOOP_STOPPED, loop_id)
        logger.info(f"Loop {loop_id} stopped")

        if process is not None:
            self._terminate(process)
            if was_paused:
                self._continue_if_stopped(process)
        return loop

    async def retry_loop(self, loop_id: str) -> asyncio.Task:
        """Requeue an errored or stopped loop and start it again.

        The iteration count is kept; the new run gets a full iteration budget.
        """
        loop = await self.store.get_loop(loop_id)
        if loop.status not in (LoopStatus.ERROR, LoopStatus.STOPPED):
            raise InvalidTransitionError(loop_id, loop.status.value, "retry")
        self._ensure_idle(loop, "retry")

        await self.store.update_loop(
            loop_id,
            status=LoopStatus.QUEUED,
            error=None,
            exit_reason=None,
            ended_at=None,
        )
        await self.logs.system(loop_id, "--- RETRY ---")
        return await self.start_loop(loop_id)

    async def send_intervention(self, loop_id: str, message: str, interrupt: bool = False) -> None:
        """Deliver an operator message to the agent.

        By default the message is written to the agent's stdin. With
        ``interrupt`` the current process is terminated and the message becomes
        the prompt of the next iteration.

        Raises:
            NoActiveProcessError: If no process is tracked for the loop.
            InvalidTransitionError: If interrupting a loop that is not running.
            ProcessError: If the agent's stdin is closed.

        Nothing is logged when the message is rejected.
        """
        process = self._require_process(loop_id)

        if interrupt:
            state = self._states.get(loop_id)
            if state is None:
                raise NoActiveProcessError(loop_id)
            loop = await self.store.get_loop(loop_id)
            if loop.status != LoopStatus.RUNNING:
                raise InvalidTransitionError(loop_id, loop.status.value, "interrupt")
            await self.logs.append(loop_id, LogType.OPERATOR, f"[INTERVENTION] {message}")
            state.pending_intervention = message
            await self.logs.system(loop_id, "Interrupting current process to inject intervention")
            self._terminate(process)
            return

        if process.stdin is None or process.stdin.is_closing():
            raise ProcessError("Agent stdin is closed", loop_id=loop_id)
        await self.logs.append(loop_id, LogType.OPERATOR, f"[INTERVENTION] {message}")
        try:
            process.stdin.write(f"{message}\n".encode())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProcessError("Agent stdin is closed", loop_id=loop_id, cause=e) from e

    def kill_all(self) -> None:
        """SIGKILL every tracked process. Used at shutdown."""
        for loop_id, process in list(self._processes.items()):
            state = self._states.get(loop_id)
            if state is not None:
                state.request_stop()
            logger.info(f"Killing agent process {process.pid} for loop {loop_id}")
            self._kill(process)

    async def shutdown(self) -> None:
        """Kill all processes and wait for their run tasks to wind down."""
        for state in self._states.values():
            state.request_stop()
        self.kill_all()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def mark_orphaned_loops(self) -> int:
        """Mark running or paused loops without a process as paused from a previous session.

        Loops whose recorded agent pid is still alive are left alone.

        Returns:
            Number of loops changed.
        """
        changed: list[str] = []

        def reconcile(state: AppState) -> AppState:
            for loop in state.loops:
                if loop.status not in (LoopStatus.RUNNING, LoopStatus.PAUSED):
                    continue
                if loop.id in self._processes or self.is_active(loop.id):
                    continue
                if loop.pid is not None and pid_alive(loop.pid):
                    # Driven by another alex process
                    continue
                if loop.status == LoopStatus.PAUSED and loop.paused_from_previous_session and loop.pid is None:
                    continue
                state = update_loop(
                    state,
                    loop.id,
                    status=LoopStatus.PAUSED,
                    pid=None,
                    paused_at=loop.paused_at or utcnow(),
                    paused_from_previous_session=True,
                )
                changed.append(loop.id)
            return state

        await self.store.transact(reconcile)
        for loop_id in changed:
            await self.logs.system(loop_id, "Process lost; loop marked paused from previous session")
        if changed:
            logger.info(f"Marked {len(changed)} orphaned loop(s) as paused")
        return len(changed)

    def reset_circuit_breaker(self, loop_id: str) -> None:
        state = self._states.get(loop_id)
        if state is None:
            raise NoActiveProcessError(loop_id)
        state.circuit_breaker = reset_circuit_breaker(state.circuit_breaker)
        logger.info(f"Circuit breaker reset for loop {loop_id}")

    def reset_session(self, loop_id: str) -> None:
        state = self._states.get(loop_id)
        if state is None:
            raise NoActiveProcessError(loop_id)
        state.session_id = None
        logger.info(f"Session reset for loop {loop_id}")

    async def _apply_criterion_updates(
        self,
        loop_id: str,
        updates: list[CriterionUpdate],
        completed_by: str,
    ) -> list[str]:
        messages: list[str] = []

        def apply(state: AppState) -> AppState:
            loop = get_loop(state, loop_id)
            if loop is None:
                return state
            criteria = [c.model_copy() for c in loop.issue.acceptance_criteria]
            for update in updates:
                if not 0 <= update.index < len(criteria):
                    continue
                by = completed_by if update.completed else None
                criterion = criteria[update.index]
                if criterion.completed == update.completed and criterion.completed_by == by:
                    continue
                criteria[update.index] = criterion.model_copy(
                    update={
                        "completed": update.completed,
                        "completed_by": by,
                        "completed_at": utcnow() if update.completed else None,
                    }
                )
                verb = "complete" if update.completed else "incomplete"
                messages.append(f"Criterion {update.index + 1} marked {verb} by {completed_by}")
            if not messages:
                return state
            issue = loop.issue.model_copy(update={"acceptance_criteria": criteria})
            return update_loop(state, loop_id, issue=issue)

        await self.store.transact(apply)
        for message in messages:
            await self.logs.system(loop_id, message)
        if messages:
            await self.bus.emit(EventType.LOOP_CRITERIA, loop_id)
        return messages

    async def set_criterion(self, loop_id: str, index: int, completed: bool) -> Loop:
        """Operator toggle of the criterion at zero-based ``index``."""
        loop = await self.store.get_loop(loop_id)
        if not 0 <= index < len(loop.issue.acceptance_criteria):
            raise ValidationError(f"No acceptance criterion {index + 1}", field="index", value=index)
        await self._apply_criterion_updates(loop_id, [CriterionUpdate(index, completed)], "operator")
        return await self.store.get_loop(loop_id)

    async def mark_manual_complete(self, loop_id: str, note: str | None = None) -> Loop:
        loop = await self.store.get_loop(loop_id)
        if loop.status not in (LoopStatus.ERROR, LoopStatus.STOPPED):
            raise InvalidTransitionError(loop_id, loop.status.value, "mark complete")

        loop = await self.store.update_loop(
            loop_id,
            status=LoopStatus.COMPLETED,
            error=None,
            exit_reason=ExitReason.MANUAL_COMPLETE.value,
            ended_at=utcnow(),
        )
        note_text = (note or "").strip() or "none"
        await self.logs.system(loop_id, f"Manually marked complete by operator: {note_text}")
        await self.bus.emit(EventType.LOOP_COMPLETED, loop_id, exit_reason=ExitReason.MANUAL_COMPLETE.value)
        return loop

    async def discard_paused_loop(self, loop_id: str) -> None:
        """Remove a paused loop that has no live process."""
        loop = await self.store.get_loop(loop_id)
        if loop.status != LoopStatus.PAUSED:
            raise InvalidTransitionError(loop_id, loop.status.value, "discard")
        self._ensure_idle(loop, "discard")

        await self.store.transact(lambda state: remove_loop(state, loop_id))
        await self.logs.system(loop_id, "Loop discarded by user")
        logger.info(f"Discarded loop {loop_id}")

    # Cross-agent review

    async def get_alternate_agent(self, exclude: str) -> str | None:
        """First available adapter other than ``exclude``."""
        available = await asyncio.to_thread(self.registry.list_available)
        for adapter in available:
            if adapter.type != exclude:
                return adapter.type
        return None

    async def create_review_loop(self, loop_id: str, reviewer: str | None = None) -> Loop:
        """Queue a loop in which a different agent reviews a completed loop's work.

        The review runs in the same working directory with a small iteration
        budget. A loop can be reviewed once.

        Args:
            loop_id: The completed loop to review.
            reviewer: Agent to review with; the first available other agent when omitted.

        Raises:
            InvalidTransitionError: If the loop is not completed.
            ValidationError: If the loop already has a review, the reviewer is
                the loop's own agent, or no other agent is available.
        """
        loop = await self.store.get_loop(loop_id)
        if loop.status != LoopStatus.COMPLETED:
            raise InvalidTransitionError(loop_id, loop.status.value, "review")
        if loop.review_loop_id:
            raise ValidationError(
                f"Loop already has a review: {loop.review_loop_id}", field="loop_id", value=loop_id
            )

        if reviewer is None:
            reviewer = await self.get_alternate_agent(loop.agent)
            if reviewer is None:
                raise ValidationError("No different agent available for review", field="reviewer")
        if reviewer == loop.agent:
            raise ValidationError(
                "Reviewer agent must be different from the original agent", field="reviewer", value=reviewer
            )

        issue = loop.issue.model_copy(
            update={
                "title": f"[Review] {loop.issue.title}",
                "body": build_review_body(loop),
                "acceptance_criteria": [AcceptanceCriterion(text=text) for text in REVIEW_CRITERIA],
            }
        )
        review = await self.create_loop(
            issue,
            reviewer,
            loop.skip_permissions,
            loop.working_dir,
            REVIEW_MAX_ITERATIONS,
            parent_loop_id=loop_id,
            is_review_loop=True,
        )
        await self.store.update_loop(loop_id, review_loop_id=review.id)
        await self.logs.system(loop_id, f"Review loop created: {review.id} (reviewer: {reviewer})")
        logger.info(f"Review {review.id} ({reviewer}) created for loop {loop_id}")
        return review

    async def create_follow_up_from_review(self, review_id: str) -> Loop:
        """Queue a loop that addresses a review's feedback on the original task.

        The follow-up uses the original agent and working directory. Its issue
        is the original one with the review summary appended and every
        criterion reset for re-verification.

        Raises:
            ValidationError: If ``review_id`` is not a review loop.
        """
        review = await self.store.get_loop(review_id)
        if not review.is_review_loop or not review.parent_loop_id:
            raise ValidationError(
                "Not a review loop or missing parent", field="review_id", value=review_id
            )
        original = await self.store.get_loop(review.parent_loop_id)

        summary = await self.logs.generate_resume_summary(review_id, REVIEW_SUMMARY_CHARS)
        issue = original.issue.model_copy(
            update={
                "title": f"[Follow-up] {original.issue.title}",
                "body": f"{original.issue.body}\n\n## Review Feedback\n\n{summary}",
                "acceptance_criteria": [
                    AcceptanceCriterion(text=c.text) for c in original.issue.acceptance_criteria
                ],
            }
        )
        follow_up = await self.create_loop(
            issue,
            original.agent,
            original.skip_permissions,
            original.working_dir,
            original.max_iterations,
            parent_loop_id=original.id,
        )
        await self.logs.system(original.id, f"Follow-up loop created from review: {follow_up.id}")
        logger.info(f"Follow-up {follow_up.id} created from review {review_id}")
        return follow_up

    async def _auto_request_review(self, loop_id: str) -> None:
        try:
            loop = await self.store.get_loop(loop_id)
            if loop.is_review_loop or loop.review_loop_id:
                return
            reviewer = await self.get_alternate_agent(loop.agent)
            if reviewer is None:
                return
            await self.logs.system(loop_id, "Auto-requesting review...")
            await self.create_review_loop(loop_id, reviewer)
        except AlexError as e:
            logger.warning(f"Auto-review failed for loop {loop_id}: {e}")
            await self._safe_log(loop_id, LogType.ERROR, f"Auto-review failed: {e.message}")

    async def set_hidden(self, loop_id: str, hidden: bool) -> Loop:
        return await self.store.update_loop(loop_id, hidden=hidden)

    async def set_active_loop(self, loop_id: str | None) -> None:
        if loop_id is not None:
            await self.store.get_loop(loop_id)
        await self.store.transact(lambda state: set_active_loop(state, loop_id))
