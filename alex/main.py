import asyncio
import logging
import signal
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

from alex import __version__
from alex.adapters import AdapterLoader, AdapterRegistry, AdapterService
from alex.config import AlexConfig, load_config, project_config_path, user_config_path
from alex.core.events import Event, EventBus, EventType
from alex.core.logs import LogStore
from alex.core.loops import LoopManager
from alex.core.state import StateStore
from alex.core.types import AcceptanceCriterion, Issue, LogType, Loop, LoopStatus
from alex.utils.exceptions import AlexError, NoActiveProcessError

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

console = Console(
    theme=Theme(
        {
            "success": "green",
            "error": "bold red",
            "warning": "yellow",
            "info": "cyan",
            "dim": "dim",
        }
    )
)

STATUS_STYLES = {
    LoopStatus.QUEUED: "dim",
    LoopStatus.RUNNING: "info",
    LoopStatus.PAUSED: "warning",
    LoopStatus.COMPLETED: "success",
    LoopStatus.ERROR: "error",
    LoopStatus.STOPPED: "warning",
}

LOG_STYLES = {
    LogType.AGENT: None,
    LogType.SYSTEM: "dim",
    LogType.OPERATOR: "info",
    LogType.ERROR: "error",
}


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


class Runtime:
    """Wires the store, adapters and loop manager for one CLI invocation.

    Only commands that drive loops pass ``reconcile``; read-only commands must
    not rewrite loops another alex process is running.
    """

    def __init__(self, config: AlexConfig, reconcile: bool = False):
        self.config = config
        self.reconcile = reconcile
        self.bus = EventBus()
        self.store = StateStore(config.data_dir)
        self.logs = LogStore(self.store.loops_dir)
        self.registry = AdapterRegistry()
        self.adapters = AdapterService(
            self.registry,
            AdapterLoader(
                global_dir=config.global_adapters_dir,
                local_dir=config.local_adapters_dir,
            ),
            self.bus,
        )
        self.manager = LoopManager(self.store, self.logs, self.registry, self.bus, config)

    async def __aenter__(self) -> "Runtime":
        self.store.ensure_dirs()
        result = self.adapters.init()
        for error in result.errors:
            console.print(f"[warning]Adapter file {error.file}: {error.error}[/warning]")
        if self.reconcile:
            await self.manager.mark_orphaned_loops()
        return self

    async def __aexit__(self, *exc) -> None:
        self.adapters.teardown()
        self.manager.kill_all()


def _run(ctx: click.Context, coro) -> object:
    """Run a coroutine, turning engine errors into a non-zero exit."""
    try:
        return asyncio.run(coro)
    except AlexError as e:
        console.print(f"[error]{e.message}[/error]")
        ctx.exit(1)


def _status_text(loop: Loop) -> str:
    style = STATUS_STYLES.get(loop.status, "dim")
    text = loop.status.value
    if loop.status == LoopStatus.PAUSED and loop.paused_from_previous_session:
        text += " (previous session)"
    return f"[{style}]{text}[/{style}]"


def _print_entry(entry) -> None:
    style = LOG_STYLES.get(entry.type)
    stamp = entry.timestamp.strftime("%H:%M:%S")
    content = escape(entry.content)
    if style:
        console.print(f"[dim]{stamp}[/dim] [{style}]{content}[/{style}]")
    else:
        console.print(f"[dim]{stamp}[/dim] {content}")


async def _drive(runtime: Runtime, loop_id: str, task: asyncio.Task | None) -> Loop:
    """Print loop output until the run task finishes. Ctrl-C stops the loop."""
    manager = runtime.manager

    def on_output(event: Event) -> None:
        if event.loop_id == loop_id:
            console.print(str(event.data.get("line", "")), markup=False, highlight=False)

    def on_change(event: Event) -> None:
        if event.loop_id == loop_id and event.type != EventType.LOOP_OUTPUT:
            console.print(f"[dim]{event.type.value}[/dim]")

    runtime.bus.subscribe(EventType.LOOP_OUTPUT, on_output)
    runtime.bus.subscribe(None, on_change)

    async def request_stop() -> None:
        try:
            await manager.stop_loop(loop_id)
        except NoActiveProcessError:
            pass

    event_loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        event_loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(request_stop()))

    if runtime.config.watch_adapters:
        runtime.adapters.start_watching(event_loop)

    try:
        if task is not None:
            await task
    finally:
        if sys.platform != "win32":
            event_loop.remove_signal_handler(signal.SIGINT)
        runtime.bus.unsubscribe(EventType.LOOP_OUTPUT, on_output)
        runtime.bus.unsubscribe(None, on_change)

    return await manager.get_loop(loop_id)


def _print_outcome(loop: Loop) -> None:
    console.print(
        f"\nLoop {loop.id}: {_status_text(loop)} after {loop.iteration} iteration(s)"
        + (f" ({loop.exit_reason})" if loop.exit_reason else "")
    )
    if loop.error:
        console.print(f"[error]{escape(loop.error)}[/error]")


@click.group()
@click.version_option(__version__, prog_name="alex")
@click.option(
    "--cwd",
    "-c",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Project directory (config and default data location)",
)
@click.option("--data-dir", type=click.Path(file_okay=False, path_type=Path), help="State directory")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Diagnostic log level (stderr)",
)
@click.pass_context
def cli(ctx: click.Context, cwd: Path | None, data_dir: Path | None, log_level: str | None):
    """alex - run AI coding agents in supervised loops until the task is done.

    Examples:
        alex create "Fix login bug" -C "Tests pass" --run
        alex list
        alex logs loop_123 --follow
    """
    try:
        config = load_config(cwd=cwd, data_dir=data_dir, log_level=log_level)
    except AlexError as e:
        console.print(f"[error]Configuration Error: {e.message}[/error]")
        ctx.exit(1)
    setup_logging(config.log_level)
    ctx.meta["cwd"] = cwd or Path.cwd()
    ctx.obj = config


@cli.command()
@click.argument("title")
@click.option("--body", "-b", default="", help="Issue description")
@click.option("--url", default="", help="Issue URL")
@click.option("--criterion", "-C", "criteria", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--agent", "-a", help="Adapter name (default from config)")
@click.option(
    "--working-dir",
    "-w",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory the agent works in (default: project directory)",
)
@click.option("--max-iterations", "-n", type=int, help="Iteration budget per run")
@click.option("--skip-permissions", is_flag=True, help="Let the agent act without confirmation prompts")
@click.option("--run", "run_now", is_flag=True, help="Start the loop immediately")
@click.pass_obj
def create(
    config: AlexConfig,
    title: str,
    body: str,
    url: str,
    criteria: tuple[str, ...],
    agent: str | None,
    working_dir: Path | None,
    max_iterations: int | None,
    skip_permissions: bool,
    run_now: bool,
):
    """Create a loop for an issue."""
    ctx = click.get_current_context()
    working_dir = working_dir or ctx.meta["cwd"]
    issue = Issue(
        title=title,
        body=body,
        url=url,
        acceptance_criteria=[AcceptanceCriterion(text=c) for c in criteria],
    )

    async def do_create():
        async with Runtime(config, reconcile=run_now) as runtime:
            loop = await runtime.manager.create_loop(
                issue,
                agent or config.default_agent,
                skip_permissions,
                working_dir,
                max_iterations,
            )
            console.print(f"[success]Created loop {loop.id}[/success]")
            if run_now:
                task = await runtime.manager.start_loop(loop.id)
                _print_outcome(await _drive(runtime, loop.id, task))

    _run(ctx, do_create())


@cli.command()
@click.argument("loop_id")
@click.pass_obj
def run(config: AlexConfig, loop_id: str):
    """Start a queued loop and follow its output."""

    async def do_run():
        async with Runtime(config, reconcile=True) as runtime:
            task = await runtime.manager.start_loop(loop_id)
            _print_outcome(await _drive(runtime, loop_id, task))

    _run(click.get_current_context(), do_run())


@cli.command()
@click.argument("loop_id")
@click.pass_obj
def resume(config: AlexConfig, loop_id: str):
    """Resume a paused loop in a new agent process."""

    async def do_resume():
        async with Runtime(config, reconcile=True) as runtime:
            task = await runtime.manager.resume_paused_loop(loop_id)
            _print_outcome(await _drive(runtime, loop_id, task))

    _run(click.get_current_context(), do_resume())


@cli.command()
@click.argument("loop_id")
@click.pass_obj
def retry(config: AlexConfig, loop_id: str):
    """Requeue an errored or stopped loop and run it again."""

    async def do_retry():
        async with Runtime(config, reconcile=True) as runtime:
            task = await runtime.manager.retry_loop(loop_id)
            _print_outcome(await _drive(runtime, loop_id, task))

    _run(click.get_current_context(), do_retry())


@cli.command()
@click.argument("loop_id")
@click.option("--agent", "-a", help="Reviewer adapter (default: first other available agent)")
@click.option("--run", "run_now", is_flag=True, help="Start the review immediately")
@click.pass_obj
def review(config: AlexConfig, loop_id: str, agent: str | None, run_now: bool):
    """Have a different agent review a completed loop."""

    async def do_review():
        async with Runtime(config, reconcile=run_now) as runtime:
            loop = await runtime.manager.create_review_loop(loop_id, agent)
            console.print(f"[success]Created review loop {loop.id} ({loop.agent})[/success]")
            if run_now:
                task = await runtime.manager.start_loop(loop.id)
                _print_outcome(await _drive(runtime, loop.id, task))

    _run(click.get_current_context(), do_review())


@cli.command(name="follow-up")
@click.argument("review_id")
@click.option("--run", "run_now", is_flag=True, help="Start the follow-up immediately")
@click.pass_obj
def follow_up(config: AlexConfig, review_id: str, run_now: bool):
    """Create a loop that acts on a review's feedback."""

    async def do_follow_up():
        async with Runtime(config, reconcile=run_now) as runtime:
            loop = await runtime.manager.create_follow_up_from_review(review_id)
            console.print(f"[success]Created follow-up loop {loop.id} ({loop.agent})[/success]")
            if run_now:
                task = await runtime.manager.start_loop(loop.id)
                _print_outcome(await _drive(runtime, loop.id, task))

    _run(click.get_current_context(), do_follow_up())


@cli.command(name="list")
@click.option("--all", "-a", "show_all", is_flag=True, help="Include hidden loops")
@click.pass_obj
def list_loops(config: AlexConfig, show_all: bool):
    """List loops."""

    async def do_list():
        async with Runtime(config) as runtime:
            return await runtime.manager.list_loops()

    loops = _run(click.get_current_context(), do_list())
    loops = [loop for loop in loops if show_all or not loop.hidden]
    if not loops:
        console.print("No loops found.")
        return

    table = Table(title="Loops")
    table.add_column("ID", style="bold")
    table.add_column("Title")
    table.add_column("Agent")
    table.add_column("Status")
    table.add_column("Iter", justify="right")
    table.add_column("Criteria", justify="right")
    for loop in loops:
        criteria = loop.issue.acceptance_criteria
        done = sum(1 for c in criteria if c.completed)
        table.add_row(
            loop.id,
            escape(loop.issue.title),
            loop.agent,
            _status_text(loop),
            f"{loop.iteration}/{loop.max_iterations}",
            f"{done}/{len(criteria)}" if criteria else "-",
        )
    console.print(table)


@cli.command()
@click.argument("loop_id")
@click.pass_obj
def show(config: AlexConfig, loop_id: str):
    """Show one loop with its acceptance criteria."""

    async def do_show():
        async with Runtime(config) as runtime:
            return await runtime.manager.get_loop(loop_id)

    loop = _run(click.get_current_context(), do_show())
    console.print(f"\n[bold]{escape(loop.issue.title)}[/bold]")
    if loop.issue.url:
        console.print(f"  URL: {loop.issue.url}")
    console.print(f"  ID: {loop.id}")
    console.print(f"  Agent: {loop.agent}")
    console.print(f"  Status: {_status_text(loop)}")
    console.print(f"  Iteration: {loop.iteration}/{loop.max_iterations}")
    console.print(f"  Working Dir: {loop.working_dir}")
    if loop.parent_loop_id:
        label = "Reviews" if loop.is_review_loop else "Follows Up"
        console.print(f"  {label}: {loop.parent_loop_id}")
    if loop.review_loop_id:
        console.print(f"  Review: {loop.review_loop_id}")
    if loop.exit_reason:
        console.print(f"  Exit Reason: {loop.exit_reason}")
    if loop.error:
        console.print(f"  [error]Error: {escape(loop.error)}[/error]")
    if loop.issue.acceptance_criteria:
        console.print("\n[bold]Acceptance Criteria[/bold]")
        for idx, criterion in enumerate(loop.issue.acceptance_criteria, start=1):
            mark = "[success]x[/success]" if criterion.completed else " "
            by = f" [dim]({criterion.completed_by})[/dim]" if criterion.completed_by else ""
            console.print(f"  {idx}. \\[{mark}] {criterion.text}{by}")


@cli.command()
@click.argument("loop_id")
@click.option("--tail", "-t", type=int, help="Only show the last N entries")
@click.option("--follow", "-f", is_flag=True, help="Keep printing new entries")
@click.pass_obj
def logs(config: AlexConfig, loop_id: str, tail: int | None, follow: bool):
    """Print a loop's log."""

    async def do_logs():
        async with Runtime(config) as runtime:
            await runtime.manager.get_loop(loop_id)
            if tail:
                entries = await runtime.logs.read_recent(loop_id, tail)
            else:
                entries = await runtime.logs.read_logs(loop_id)
            for entry in entries:
                _print_entry(entry)
            if follow:
                async for entry in runtime.logs.follow(loop_id):
                    _print_entry(entry)

    try:
        _run(click.get_current_context(), do_logs())
    except KeyboardInterrupt:
        pass


@cli.command()
@click.argument("loop_id")
@click.option("--note", help="Why the loop is considered complete")
@click.pass_obj
def complete(config: AlexConfig, loop_id: str, note: str | None):
    """Mark an errored or stopped loop as completed."""

    async def do_complete():
        async with Runtime(config) as runtime:
            await runtime.manager.mark_manual_complete(loop_id, note)

    _run(click.get_current_context(), do_complete())
    console.print(f"[success]Loop {loop_id} marked complete[/success]")


@cli.command()
@click.argument("loop_id")
@click.argument("number", type=int)
@click.option("--done/--undone", default=True, help="Mark the criterion complete or incomplete")
@click.pass_obj
def criterion(config: AlexConfig, loop_id: str, number: int, done: bool):
    """Toggle acceptance criterion NUMBER (1-based)."""

    async def do_toggle():
        async with Runtime(config) as runtime:
            return await runtime.manager.set_criterion(loop_id, number - 1, done)

    loop = _run(click.get_current_context(), do_toggle())
    text = loop.issue.acceptance_criteria[number - 1].text
    state = "complete" if done else "incomplete"
    console.print(f"[success]Criterion {number} marked {state}:[/success] {text}")


@cli.command()
@click.argument("loop_id")
@click.pass_obj
def discard(config: AlexConfig, loop_id: str):
    """Remove a paused loop left over from a previous session."""

    async def do_discard():
        async with Runtime(config, reconcile=True) as runtime:
            await runtime.manager.discard_paused_loop(loop_id)

    _run(click.get_current_context(), do_discard())
    console.print(f"[success]Discarded loop {loop_id}[/success]")


@cli.command()
@click.argument("loop_id")
@click.option("--unhide", is_flag=True, help="Show the loop again")
@click.pass_obj
def hide(config: AlexConfig, loop_id: str, unhide: bool):
    """Hide a loop from the default listing."""

    async def do_hide():
        async with Runtime(config) as runtime:
            await runtime.manager.set_hidden(loop_id, not unhide)

    _run(click.get_current_context(), do_hide())
    console.print(f"[success]Loop {loop_id} {'shown' if unhide else 'hidden'}[/success]")


@cli.command()
@click.pass_obj
def adapters(config: AlexConfig):
    """List registered agent adapters and whether their CLIs are installed."""

    async def do_adapters():
        async with Runtime(config) as runtime:
            rows = []
            for adapter in runtime.registry.list_all():
                available = await asyncio.to_thread(adapter.is_available)
                rows.append((adapter.type, adapter.display_name, available))
            return rows

    rows = _run(click.get_current_context(), do_adapters())
    table = Table(title="Adapters")
    table.add_column("Name", style="bold")
    table.add_column("Display Name")
    table.add_column("Available")
    for name, display_name, available in rows:
        table.add_row(name, display_name, "[success]yes[/success]" if available else "[dim]no[/dim]")
    console.print(table)


@cli.command(name="config")
@click.pass_obj
def show_config(config: AlexConfig):
    """Show the effective configuration."""
    console.print("\n[bold]Configuration[/bold]")
    for name, value in config.model_dump().items():
        console.print(f"  {name}: {value}")
    console.print("  Config Files:")
    cwd = click.get_current_context().meta["cwd"]
    for label, path in (("User", user_config_path()), ("Project", project_config_path(cwd))):
        console.print(f"    - {label}: {path} ({'exists' if path.exists() else 'not found'})")


if __name__ == "__main__":
    cli()
