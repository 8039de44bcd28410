from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from pathlib import Path

import click

from conductor import __version__
from conductor.backends import DispatchError
from conductor.config import CONFIG_FILENAME, ConductorConfig, ConfigError, load_config, save_config
from conductor.state import GitWorkspace, WorkflowStateError, WorkflowStore
from conductor.state.gitops import GitCommandError
from conductor.ui import ClickUI
from conductor.workflow.context import PhaseContext
from conductor.workflow.interaction import InteractionError, format_interaction
from conductor.workflow.queue import QueuedWorkflow, WorkflowQueue
from conductor.workflow.router import RouterResult, format_status_line, run_workflow

CLI_ERRORS = (ConfigError, WorkflowStateError, GitCommandError, DispatchError, InteractionError)
RESUME_HINT = "Answer later with `conductor resume --input <answer>`."


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig
    ctx: PhaseContext


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        force=True,
    )


def _build_context(repo_root: Path, config: ConductorConfig) -> PhaseContext:
    return PhaseContext.create(repo_root, config, ui=ClickUI())


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
        ctx = _build_context(repo_root, config)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(repo_root=repo_root, config_path=config_path, config=config, ctx=ctx)


async def _advance(ctx: PhaseContext, user_input: str | None) -> RouterResult:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, ctx.cancel.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        return await run_workflow(ctx, user_input)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _drive(runtime: Runtime, user_input: str | None) -> None:
    """Run the workflow, prompting for answers until it pauses, fails or ends."""
    while True:
        try:
            result = asyncio.run(_advance(runtime.ctx, user_input))
        except CLI_ERRORS as exc:
            raise click.ClickException(str(exc)) from exc

        answer_rejected = (
            result.status == "error"
            and result.state is not None
            and result.state.pending_interaction is not None
        )
        if answer_rejected:
            click.secho(result.message, fg="red", err=True)
        elif result.status == "error":
            raise click.ClickException(result.message)
        elif result.status != "waiting":
            click.echo(result.message)
            return
        else:
            click.echo(result.message)
        try:
            user_input = click.prompt("Answer", default="", show_default=False)
        except click.Abort:
            click.echo("")
            click.echo(RESUME_HINT)
            return


@click.group()
@click.version_option(__version__, prog_name="conductor")
@click.option("--verbose", is_flag=True, default=False, help="Log debug output to stderr.")
def cli(verbose: bool) -> None:
    """Conductor CLI."""
    _configure_logging(verbose)


@cli.command("init")
@click.option("--test-command", default=None)
@click.option("--validation-command", default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(
    test_command: str | None, validation_command: str | None, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if test_command is not None:
        config.project.test_command = test_command
    if validation_command is not None:
        config.project.validation_command = validation_command
    if config.project.name == "my-project":
        config.project.name = repo_root.name
    save_config(config_path, config)
    (repo_root / config.agents.plans_dir).mkdir(parents=True, exist_ok=True)
    click.echo(f"Initialized conductor in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agents: {', '.join(config.agents.enabled)}")


@cli.command("start")
@click.argument("description")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def start_command(description: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    if runtime.ctx.store.exists():
        raise click.ClickException(
            "A workflow is already active. Use `conductor resume` or `conductor abort`."
        )
    preflight = runtime.ctx.git.preflight()
    for warning in preflight.warnings:
        click.secho(f"Warning: {warning}", fg="yellow", err=True)
    _drive(runtime, description)


@cli.command("resume")
@click.option("--input", "user_input", default=None, help="Answer to the pending question.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def resume_command(user_input: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    _drive(runtime, user_input)


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
def status_command(as_json: bool) -> None:
    repo_root = Path.cwd().resolve()
    store = WorkflowStore(repo_root, write_progress=False)
    try:
        state = store.load()
    except WorkflowStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if state is None:
        click.echo("No active workflow.")
        return
    if as_json:
        click.echo(json.dumps(state.to_dict(), ensure_ascii=False, indent=2))
        return
    click.echo(f"Workflow: {state.user_description}")
    click.echo(format_status_line(state))
    for task in state.tasks:
        click.echo(f"  {task.id:>3} {task.status:<12} {task.title}")
    if state.error:
        click.echo(f"Error: {state.error}")
    if state.pending_interaction is not None:
        click.echo("")
        click.echo(format_interaction(state.pending_interaction))


@cli.command("abort")
def abort_command() -> None:
    repo_root = Path.cwd().resolve()
    store = WorkflowStore(repo_root, write_progress=False)
    if not store.exists():
        click.echo("No active workflow.")
        return
    store.clear()
    click.echo("Workflow aborted.")


@cli.command("preflight")
def preflight_command() -> None:
    result = GitWorkspace(Path.cwd().resolve()).preflight()
    click.echo(f"Branch: {result.branch or '(none)'}")
    click.echo(f"HEAD: {result.sha[:10] if result.sha else '(none)'}")
    click.echo(f"Clean: {'yes' if result.clean else 'no'}")
    for path in result.uncommitted_files:
        click.echo(f"  modified: {path}")
    for warning in result.warnings:
        click.secho(f"Warning: {warning}", fg="yellow")


@cli.group("queue")
def queue_group() -> None:
    """Manage follow-up workflows started after the current one finishes."""


@queue_group.command("add")
@click.argument("title")
@click.option("--description", default=None)
@click.option("--design", "design_path", default=None, help="Design document to plan from.")
def queue_add_command(title: str, description: str | None, design_path: str | None) -> None:
    queue = WorkflowQueue(Path.cwd().resolve())
    queue.enqueue(
        QueuedWorkflow(title=title, description=description or title, parent_design_path=design_path)
    )
    click.echo(f"Queued: {title}")


@queue_group.command("list")
def queue_list_command() -> None:
    items = WorkflowQueue(Path.cwd().resolve()).peek()
    if not items:
        click.echo("Queue is empty.")
        return
    for index, item in enumerate(items, start=1):
        click.echo(f"{index}. {item.title}")


@queue_group.command("clear")
def queue_clear_command() -> None:
    WorkflowQueue(Path.cwd().resolve()).clear()
    click.echo("Queue cleared.")


if __name__ == "__main__":
    cli()
