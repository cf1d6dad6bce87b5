from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

import click
from loguru import logger

from foreman.config import ForemanConfig, load_config, save_config
from foreman.control import ControlPlane
from foreman.errors import ForemanError, PipelinePaused
from foreman.logs import configure_logging
from foreman.modes import MODE_REGISTRY
from foreman.pipeline import PipelineController, PipelineOutcome
from foreman.state.pipeline import Phase
from foreman.state.records import Answer, Question

T = TypeVar("T")

DEFAULT_CONFIG_FILE = "foreman.toml"


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    config: ForemanConfig
    controller: PipelineController


def _resolve_config_path(workspace: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace / config_path
    return config_path.resolve()


async def ask_on_console(questions: list[Question]) -> list[Answer]:
    click.secho("\n=== Clarification Needed ===\n", fg="cyan", bold=True)
    answers: list[Answer] = []
    for index, question in enumerate(questions, start=1):
        click.secho(f"Question {index}/{len(questions)}:", fg="yellow")
        click.echo(f"  {question.question}")
        click.secho(f"  Reason: {question.reason}", dim=True)
        reply = await asyncio.to_thread(click.prompt, ">", default="", show_default=False)
        answers.append(Answer(question=question.question, answer=str(reply).strip()))
        click.echo()
    return answers


def _load_runtime(workspace: Path, config_path: Path, *, dry_run: bool) -> Runtime:
    config = load_config(config_path)
    controller = PipelineController(
        config,
        workspace,
        control=ControlPlane(),
        ask_human=ask_on_console,
        dry_run=dry_run,
    )
    return Runtime(workspace=workspace, config_path=config_path, config=config, controller=controller)


async def _with_signal_handlers(control: ControlPlane, action: Callable[[], Awaitable[T]]) -> T:
    loop = asyncio.get_running_loop()

    def on_interrupt() -> None:
        if control.pause_requested:
            control.request_hard_stop()
        else:
            click.echo("\nSoft pause requested. Press Ctrl-C again to stop the running agent.", err=True)
            control.request_soft_pause()

    installed: list[signal.Signals] = []
    for signum, handler in ((signal.SIGINT, on_interrupt), (signal.SIGTERM, control.request_hard_stop)):
        try:
            loop.add_signal_handler(signum, handler)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)
    try:
        return await action()
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _failure_message(runtime: Runtime, exc: ForemanError) -> str:
    try:
        state = runtime.controller.states.load()
    except ForemanError:
        return str(exc)
    if state is None:
        return str(exc)
    return f"{exc} (phase: {state.phase})"


def _run_pipeline(runtime: Runtime, action: Callable[[], Awaitable[PipelineOutcome]]) -> None:
    try:
        outcome = asyncio.run(_with_signal_handlers(runtime.controller.control, action))
    except PipelinePaused as exc:
        click.echo(f"Pipeline paused at phase {exc.phase}. Run `foreman resume` to continue.")
        return
    except ForemanError as exc:
        message = _failure_message(runtime, exc)
        logger.error("Pipeline failed: {}", message)
        raise click.ClickException(message) from exc

    if outcome.phase == Phase.PRD_REVIEW_STOP:
        click.echo(f"PRD ready for review: {runtime.controller.store.path('prd.md')}")
        click.echo("Run `foreman resume` to continue from planning.")
        return
    click.echo(f"Pipeline complete (iteration {outcome.iteration}).")
    if outcome.commit_message:
        click.echo("Suggested commit message:")
        click.echo(f"  {outcome.commit_message}")


@click.group()
@click.option("--log-level", default="INFO", show_default=True)
def cli(log_level: str) -> None:
    """Foreman pipeline orchestrator CLI."""
    configure_logging(log_level)


@cli.command("init")
@click.option("--mode", type=click.Choice(sorted(MODE_REGISTRY)), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(mode: str | None, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace, config_value)
    config = load_config(config_path)
    if mode:
        config.pipeline.default_mode = mode
    save_config(config_path, config)
    (workspace / config.runner.state_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Foreman in {workspace}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Default mode: {config.pipeline.default_mode}")
    click.echo(f"Agent binary: {config.runner.binary}")


@cli.command("start")
@click.argument("task", nargs=-1)
@click.option("--task-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
@click.option(
    "--project-dir",
    type=click.Path(file_okay=False, path_type=Path),
    prompt="Project directory",
)
@click.option("--mode", type=click.Choice(sorted(MODE_REGISTRY)), default=None)
@click.option("--stop-after-prd", is_flag=True, default=False)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--force", is_flag=True, default=False, help="Discard an existing run first.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def start_command(
    task: tuple[str, ...],
    task_file: Path | None,
    project_dir: Path,
    mode: str | None,
    stop_after_prd: bool,
    dry_run: bool,
    force: bool,
    config_value: str,
) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value), dry_run=dry_run)

    if task_file is not None:
        task_text = task_file.read_text(encoding="utf-8").strip()
    else:
        task_text = " ".join(task).strip()
    if not task_text:
        task_text = click.prompt("What would you like to build?").strip()

    if force:
        runtime.controller.reset()
    _run_pipeline(
        runtime,
        lambda: runtime.controller.start(
            task_text,
            project_dir=project_dir,
            mode=mode,
            stop_after_prd=stop_after_prd,
        ),
    )


@cli.command("resume")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def resume_command(dry_run: bool, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value), dry_run=dry_run)
    _run_pipeline(runtime, runtime.controller.resume)


@cli.command("status")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value), dry_run=False)
    try:
        payload = runtime.controller.status()
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("reset")
@click.confirmation_option(prompt="Delete all persisted pipeline state?")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def reset_command(config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value), dry_run=False)
    runtime.controller.reset()
    click.echo("Pipeline state reset.")


def main() -> None:
    cli()
