"""CLI for trudger."""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import click

from trudger import __version__
from trudger.commands import CommandRunner
from trudger.config import DEFAULT_CONFIG_PATH, Config, load_config, resolve_config_path
from trudger.console import error
from trudger.doctor import run_doctor
from trudger.errors import ConfigError, PromptError, quit_run
from trudger.events import TransitionLog
from trudger.ids import InvalidTaskIdError, parse_manual_tasks
from trudger.notifications import NotificationDispatcher
from trudger.prompts import load_prompts
from trudger.run_loop import InterruptFlag, RunLoop, validate_run_config

logger = logging.getLogger(__name__)


def bootstrap_hint(default_path: Path) -> str:
    return (
        f"Missing config file: {default_path}\n\n"
        "Create one from sample_configuration/trudger.yml, then run:\n"
        "  trudger\n\n"
        "To use a config at a non-default path, run:\n"
        "  trudger --config PATH"
    )


def _load(config_path: Optional[Path]) -> Optional[Tuple[Path, Config]]:
    """Resolve and load the config, printing the problem on failure."""
    path = resolve_config_path(config_path)
    if not path.is_file():
        if config_path is None:
            error(bootstrap_hint(path))
        else:
            error(f"Missing config file: {path}")
        return None
    try:
        return path, load_config(path)
    except ConfigError as e:
        error(str(e))
        return None


def run_tasks(config_path: Optional[Path], raw_tasks: List[str]) -> int:
    """Normal run mode. Returns the process exit code."""
    try:
        manual_tasks = parse_manual_tasks(raw_tasks)
    except InvalidTaskIdError as e:
        error(str(e))
        return 1

    loaded = _load(config_path)
    if loaded is None:
        return 1
    path, config = loaded

    log = TransitionLog(config.log_file)
    runner = CommandRunner(log, path)
    dispatcher = NotificationDispatcher(
        runner,
        log,
        hook=config.hooks.notification_command(),
        scope=config.hooks.effective_notification_scope(),
    )
    dispatcher.attach()

    try:
        validate_run_config(config, manual_tasks)
        prompts = load_prompts()
    except (ConfigError, PromptError) as e:
        error(str(e))
        return quit_run(log, str(e), 1).code

    interrupt = InterruptFlag()
    with interrupt.installed():
        loop = RunLoop(
            config,
            prompts,
            log,
            runner,
            dispatcher=dispatcher,
            manual_tasks=manual_tasks,
            interrupt=interrupt,
        )
        return loop.run()


class TrudgerGroup(click.Group):
    """Group that rejects positional task IDs with a migration hint."""

    def resolve_command(self, ctx: click.Context, args: List[str]):  # type: ignore[no-untyped-def]
        if args and args[0] not in self.commands:
            raise click.UsageError(
                "Positional arguments are not supported.\n"
                "Migration: pass manual task ids via -t/--task "
                f"(for example: trudger -t {' -t '.join(args)}).",
                ctx,
            )
        return super().resolve_command(ctx, args)


@click.group(cls=TrudgerGroup, invoke_without_command=True)
@click.version_option(version=__version__, prog_name="trudger")
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Config file (default: {DEFAULT_CONFIG_PATH})",
)
@click.option(
    "-t",
    "--task",
    "tasks",
    multiple=True,
    metavar="ID[,ID...]",
    help="Process these task IDs before asking next_task (repeatable)",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], tasks: Tuple[str, ...], verbose: bool) -> None:
    """Trudger: work through tracked tasks with an agent.

    Selects a ready task, marks it in progress, runs the solve agent once
    and the review agent until the tracker reports the task closed or
    blocked, then runs the matching hook. Repeats until no ready task is
    left.

    \b
    Examples:
        trudger                      # Work until the tracker runs dry
        trudger -t tr-1,tr-2         # Start with these tasks
        trudger -c ./trudger.yml     # Use a project-local config
        trudger doctor               # Check the config against a scratch tracker
    """
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["tasks"] = list(tasks)
    if ctx.invoked_subcommand is not None:
        return
    ctx.exit(run_tasks(config_path, list(tasks)))


@main.command()
@click.pass_context
def doctor(ctx: click.Context) -> None:
    """Check the config against a scratch tracker.

    Runs hooks.on_doctor_setup in a temporary directory (exported as
    TRUDGER_DOCTOR_SCRATCH_DIR), then exercises next_task, task_show and
    task_status there. Agents and outcome hooks are not run.
    """
    if ctx.obj["tasks"]:
        error("-t/--task is not supported in doctor mode.")
        ctx.exit(1)

    loaded = _load(ctx.obj["config_path"])
    if loaded is None:
        ctx.exit(1)
    path, config = loaded
    ctx.exit(run_doctor(config, path, TransitionLog(config.log_file)))


if __name__ == "__main__":
    main()
