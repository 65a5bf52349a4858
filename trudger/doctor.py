"""Doctor mode: check a configuration against a throwaway tracker.

``hooks.on_doctor_setup`` runs in a fresh temporary directory exported as
``TRUDGER_DOCTOR_SCRATCH_DIR`` and is expected to create a disposable
tracker there. The tracker commands are then exercised in that directory:

- ``next_task`` must exit 0 or 1
- if it names a task, ``task_show`` must succeed and ``task_status`` must
  return a known status

No agent, hook or status-changing command runs, and no notification is sent.
The scratch directory is removed afterwards.
"""

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from rich.markup import escape

from trudger.commands import CommandRunner
from trudger.config import Config
from trudger.console import console, error
from trudger.errors import ConfigError, quit_run
from trudger.events import TransitionLog
from trudger.ids import InvalidTaskIdError, first_token, validate_task_id
from trudger.run_loop import validate_run_config
from trudger.tasks import TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class DoctorResult:
    """Result of a single doctor check.

    Attributes:
        name: Name of the check
        passed: Whether the check passed
        message: Human-readable outcome
    """

    name: str
    passed: bool
    message: str


def _check_task(runner: CommandRunner, config: Config, scratch: str, task_id: str) -> List[DoctorResult]:
    context = {"TRUDGER_DOCTOR_SCRATCH_DIR": scratch, "TRUDGER_TASK_ID": task_id}
    results = []

    show = runner.run(config.commands.task_show, context, label="doctor-task-show", task=task_id)
    if show.ok:
        results.append(DoctorResult("task_show", True, f"task_show ran for {task_id}"))
    else:
        results.append(DoctorResult("task_show", False, f"commands.task_show {show.describe()}"))
        return results

    status = runner.run(
        config.commands.task_status,
        {**context, "TRUDGER_TASK_SHOW": show.stdout},
        label="doctor-task-status",
        task=task_id,
    )
    token = first_token(status.stdout)
    if not status.ok:
        results.append(DoctorResult("task_status", False, f"commands.task_status {status.describe()}"))
    elif TaskStatus.parse(token) is None:
        results.append(
            DoctorResult(
                "task_status",
                False,
                f"commands.task_status returned {token or 'nothing'!r} for {task_id}; "
                f"expected one of: {', '.join(s.value for s in TaskStatus)}",
            )
        )
    else:
        results.append(DoctorResult("task_status", True, f"{task_id} is {token}"))
    return results


def run_checks(runner: CommandRunner, config: Config, scratch: str) -> List[DoctorResult]:
    """Run the doctor checks inside ``scratch``; stop at the first failure."""
    context = {"TRUDGER_DOCTOR_SCRATCH_DIR": scratch}
    hook = config.hooks.on_doctor_setup or ""

    setup = runner.run(hook, context, label="doctor-setup", capture=False)
    if not setup.ok:
        return [DoctorResult("on_doctor_setup", False, f"hooks.on_doctor_setup {setup.describe()}")]
    results = [DoctorResult("on_doctor_setup", True, "scratch tracker created")]

    next_task = config.commands.next_task or ""
    selected = runner.run(next_task, context, label="doctor-next-task")
    if selected.exit_code not in (0, 1):
        results.append(DoctorResult("next_task", False, f"commands.next_task {selected.describe()}"))
        return results

    token = first_token(selected.stdout) if selected.ok else ""
    if not token:
        results.append(DoctorResult("next_task", True, "no task available"))
        return results
    try:
        task_id = validate_task_id(token)
    except InvalidTaskIdError as e:
        results.append(
            DoctorResult("next_task", False, f"commands.next_task returned an invalid task id: {token} ({e.reason})")
        )
        return results
    results.append(DoctorResult("next_task", True, f"next task is {task_id}"))
    results.extend(_check_task(runner, config, scratch, task_id))
    return results


def run_doctor(
    config: Config,
    config_path: Path,
    log: TransitionLog,
    runner: Optional[CommandRunner] = None,
) -> int:
    """Run doctor mode and return the exit code (0 when every check passed)."""
    try:
        validate_run_config(config, [])
    except ConfigError as e:
        error(str(e))
        return quit_run(log, "doctor_invalid_config", 1).code

    if not (config.hooks.on_doctor_setup and config.hooks.on_doctor_setup.strip()):
        error("hooks.on_doctor_setup must not be empty.")
        return quit_run(log, "doctor_missing_setup_hook", 1).code

    with tempfile.TemporaryDirectory(prefix="trudger-doctor-") as scratch:
        base = runner or CommandRunner(log, config_path)
        scoped = CommandRunner(
            log, config_path, cwd=Path(scratch), base_env=base.base_env, shell=base.shell
        )
        results = run_checks(scoped, config, scratch)

    failed = [result for result in results if not result.passed]
    for result in results:
        mark = "[green]✓[/green]" if result.passed else "[red]✗[/red]"
        console.print(f"  {mark} {result.name}: {escape(result.message)}")

    if failed:
        console.print("[red]Doctor checks failed[/red]")
        return quit_run(log, f"doctor_failed:{failed[0].name}", 1).code
    console.print("[green]✓ Doctor checks passed[/green]")
    log.record("doctor_ok")
    return 0
