"""The trudger run loop.

One run processes tasks one at a time until the selector runs dry, a fatal
error occurs or the user interrupts. For each task:

1. mark it ``in_progress`` (``task_update_status``)
2. ``task_show``, then the solve agent with ``TRUDGER_PROMPT``
3. up to ``review_loop_limit`` times: ``task_show``, the review agent with
   ``TRUDGER_REVIEW_PROMPT``, then ``task_status``

   - ``closed``: run ``hooks.on_completed``
   - ``blocked``: run ``hooks.on_requires_human``
   - anything else: review again; once the limit is used up, mark the task
     ``blocked`` and run ``hooks.on_requires_human``

Retries re-run the review agent only; the solve agent runs once per task.
Every path out of :meth:`RunLoop.run`, including interrupts and unexpected
errors, ends the current task and sends ``run_end``.
"""

import logging
import os
import signal
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional

from trudger.commands import CommandRunner
from trudger.config import Config
from trudger.console import error, warn
from trudger.errors import ConfigError, Quit, quit_run
from trudger.events import TransitionLog
from trudger.ids import first_token
from trudger.notifications import NotificationDispatcher, NotificationEvent
from trudger.prompts import Prompts
from trudger.selector import TaskSelector, skip_not_ready_limit
from trudger.state_machine import TaskStateMachine
from trudger.tasks import Outcome, TaskContext, TaskStatus

logger = logging.getLogger(__name__)

INTERRUPTED_EXIT_CODE = 130


class InterruptFlag:
    """Set on SIGINT; the run loop checks it between steps."""

    def __init__(self) -> None:
        self._set = False

    @property
    def is_set(self) -> bool:
        return self._set

    def set(self) -> None:
        self._set = True

    def _handle(self, signum: int, frame: Any) -> None:
        self.set()

    @contextmanager
    def installed(self) -> Iterator["InterruptFlag"]:
        """Route SIGINT to this flag for the duration of the block."""
        try:
            previous = signal.signal(signal.SIGINT, self._handle)
        except ValueError as e:
            # Not the main thread; Ctrl-C keeps raising KeyboardInterrupt.
            warn(f"failed to set interrupt handler: {e}")
            yield self
            return
        try:
            yield self
        finally:
            signal.signal(signal.SIGINT, previous)


def validate_run_config(config: Config, manual_tasks: List[str]) -> None:
    """Checks that depend on the run mode rather than on the config alone.

    Raises:
        ConfigError: If ``commands.next_task`` is missing and no manual tasks
            were given
    """
    next_task = (config.commands.next_task or "").strip()
    if next_task:
        return
    if not manual_tasks:
        raise ConfigError(
            "commands.next_task must not be empty.\n"
            "Migration: add commands.next_task to your config "
            "(required when no manual task IDs are given)."
        )
    warn("commands.next_task is empty; manual task IDs provided, continuing without next_task.")


class RunLoop:
    """Runs tasks through solve and review until there is nothing left to do.

    Args:
        config: Validated configuration
        prompts: Solve and review prompts
        log: Transition log
        runner: Command runner for tracker commands, agents and hooks
        dispatcher: Notification dispatcher (default: inactive)
        manual_tasks: Validated task IDs to process before ``next_task``
        interrupt: Flag set by SIGINT
        environ: Environment consulted for ``TRUDGER_SKIP_NOT_READY_LIMIT``
    """

    def __init__(
        self,
        config: Config,
        prompts: Prompts,
        log: TransitionLog,
        runner: CommandRunner,
        dispatcher: Optional[NotificationDispatcher] = None,
        manual_tasks: Optional[List[str]] = None,
        interrupt: Optional[InterruptFlag] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config = config
        self.prompts = prompts
        self.log = log
        self.runner = runner
        self.dispatcher = dispatcher or NotificationDispatcher(runner, log, enabled=False)
        self.manual_tasks = list(manual_tasks or [])
        self.interrupt = interrupt or InterruptFlag()
        self.environ = os.environ if environ is None else environ
        self.completed_tasks: List[str] = []
        self.needs_human_tasks: List[str] = []
        self.current: Optional[TaskContext] = None

    def run(self) -> int:
        """Process tasks and return the process exit code."""
        self.dispatcher.attach()
        self.dispatcher.on_run_boundary(NotificationEvent.RUN_START)
        self.log.record("run_start")

        try:
            self._process_tasks()
            exit_code = 0
        except Quit as e:
            exit_code = e.code
        except KeyboardInterrupt:
            exit_code = quit_run(self.log, "interrupted", INTERRUPTED_EXIT_CODE).code
        except Exception as e:
            logger.debug("Unexpected error in run loop", exc_info=True)
            error(f"Unexpected error: {e}")
            exit_code = quit_run(self.log, f"unexpected_error:{e}", 1).code

        try:
            self.reset_task_on_exit(exit_code)
            self._finish_current_task()
        finally:
            self.log.record("run_end", exit_code=exit_code)
            self.dispatcher.on_run_boundary(NotificationEvent.RUN_END, exit_code)
        return exit_code

    def _process_tasks(self) -> None:
        selector = TaskSelector(
            self.runner,
            self.log,
            self.config.commands.next_task,
            read_status=self._read_status,
            manual_tasks=self.manual_tasks,
            check_interrupted=self._check_interrupted,
            skip_limit=skip_not_ready_limit(self.environ),
            context=self._context,
        )
        for task in selector:
            self._process_task(task)
        raise quit_run(self.log, selector.idle_reason or "no_task", 0)

    def _process_task(self, task: TaskContext) -> None:
        task_id = task.task_id
        self.current = task
        machine = TaskStateMachine(self.config.review_loop_limit)
        machine.fire("status_checked")
        self.log.record("task_start", task=task_id, status=task.status)
        self.dispatcher.on_task_boundary(NotificationEvent.TASK_START, task_id)

        self._check_interrupted()
        self.log.record("state=SOLVING", task=task_id)
        self._update_status(task, TaskStatus.IN_PROGRESS)
        machine.fire("start")

        self._check_interrupted()
        self._show(task)
        self._check_interrupted()
        self._run_agent(task, review=False)
        machine.fire("solve")

        while not machine.is_terminal:
            self._review(task, machine)

        self.log.record(
            "task_lists",
            completed=",".join(self.completed_tasks),
            needs_human=",".join(self.needs_human_tasks),
        )
        self._finish_current_task()

    def _review(self, task: TaskContext, machine: TaskStateMachine) -> None:
        task_id = task.task_id
        limit = self.config.review_loop_limit
        self.log.record("state=REVIEWING", task=task_id, loop=machine.reviews + 1)

        self._check_interrupted()
        self._show(task)
        self._check_interrupted()
        self._run_agent(task, review=True)
        self._check_interrupted()

        token = self._read_status(task_id)
        task.status = token or None
        if not token:
            self.log.record("review_state_missing", task=task_id)
            error(f"Task {task_id} missing status after review.")
            raise quit_run(self.log, f"task_missing_status_after_review:{task_id}", 1)
        status = TaskStatus.parse(token)
        if status is None:
            self.log.record("unknown_task_status", task=task_id, status=token)
            error(f"Task {task_id} has unknown status {token!r} after review.")
            raise quit_run(self.log, f"unknown_task_status:{task_id}:{token}", 1)

        self.log.record("review_state", task=task_id, status=token)
        outcome = Outcome.from_status(status)
        if outcome is Outcome.CLOSED:
            machine.fire("close")
            self._completed(task)
        elif outcome is Outcome.BLOCKED:
            machine.fire("block")
            self._needs_human(task)
        else:
            machine.fire("retry")
            if machine.fire("review_again"):
                self.log.record("review_loop_retry", task=task_id, loop=machine.reviews, limit=limit)
                return
            self.log.record(
                "review_loop_exhausted", task=task_id, loops=machine.reviews, limit=limit
            )
            self._update_status(task, TaskStatus.BLOCKED)
            task.status = TaskStatus.BLOCKED.value
            machine.fire("exhaust")
            self._needs_human(task)

    def _completed(self, task: TaskContext) -> None:
        self.completed_tasks.append(task.task_id)
        self.log.record("completed", task=task.task_id)
        self._run_hook(task, "on_completed", self.config.hooks.on_completed)

    def _needs_human(self, task: TaskContext) -> None:
        self.needs_human_tasks.append(task.task_id)
        self.log.record("needs_human", task=task.task_id)
        self._run_hook(task, "on_requires_human", self.config.hooks.on_requires_human)

    def _finish_current_task(self) -> None:
        task = self.current
        if task is None:
            return
        self.current = None
        self.log.record("task_end", task=task.task_id)
        self.dispatcher.on_task_boundary(
            NotificationEvent.TASK_END, task.task_id, (task.show or "").strip()
        )

    def _check_interrupted(self) -> None:
        if self.interrupt.is_set:
            raise quit_run(self.log, "interrupted", INTERRUPTED_EXIT_CODE)

    def _context(self, task_id: Optional[str] = None, **extra: Optional[str]) -> Dict[str, Optional[str]]:
        """``TRUDGER_*`` variables describing the current run state."""
        task = self.current
        if task is not None and task_id not in (None, task.task_id):
            task = None
        context: Dict[str, Optional[str]] = {
            "TRUDGER_TASK_ID": task_id or (task.task_id if task else None),
            "TRUDGER_TASK_SHOW": task.show if task else None,
            "TRUDGER_TASK_STATUS": task.status if task else None,
            "TRUDGER_COMPLETED": ",".join(self.completed_tasks),
            "TRUDGER_NEEDS_HUMAN": ",".join(self.needs_human_tasks),
        }
        context.update(extra)
        return context

    def _read_status(self, task_id: str) -> str:
        """Run ``task_status`` and return the first token of its output."""
        result = self.runner.run(
            self.config.commands.task_status,
            self._context(task_id),
            label="task_status",
            task=task_id,
        )
        if not result.ok:
            error(f"task_status {result.describe()} for task {task_id}.")
            raise quit_run(self.log, f"task_status_failed:task_status {result.describe()}", 1)
        return first_token(result.stdout)

    def _show(self, task: TaskContext) -> None:
        result = self.runner.run(
            self.config.commands.task_show,
            self._context(),
            label="task_show",
            task=task.task_id,
        )
        if not result.ok:
            self.log.record("error", task=task.task_id)
            error(f"task_show {result.describe()} for task {task.task_id}.")
            raise quit_run(self.log, f"error:task_show {result.describe()}", 1)
        task.show = result.stdout

    def _update_status(self, task: TaskContext, target: TaskStatus) -> None:
        result = self.runner.run(
            self.config.commands.task_update_status,
            self._context(TRUDGER_TARGET_STATUS=target.value),
            label="task_update_status",
            task=task.task_id,
            capture=False,
        )
        if not result.ok:
            error(
                f"task_update_status {result.describe()} "
                f"(task {task.task_id}, target status {target.value})."
            )
            raise quit_run(
                self.log,
                f"error:task_update_status {result.describe()} (target {target.value})",
                1,
            )

    def _run_agent(self, task: TaskContext, review: bool) -> None:
        if review:
            phase, command = "review", self.config.agent_review_command
            prompts = {"TRUDGER_PROMPT": None, "TRUDGER_REVIEW_PROMPT": self.prompts.review}
        else:
            phase, command = "solve", self.config.agent_command
            prompts = {"TRUDGER_PROMPT": self.prompts.solve, "TRUDGER_REVIEW_PROMPT": None}

        result = self.runner.run(
            command,
            self._context(**prompts),
            label=f"agent_{phase}",
            task=task.task_id,
            capture=False,
        )
        if not result.ok:
            self.log.record(f"{phase}_failed", task=task.task_id)
            error(f"Agent {phase} {result.describe()} for task {task.task_id}.")
            raise quit_run(self.log, f"{phase}_failed:{task.task_id}", 1)

    def _run_hook(self, task: TaskContext, name: str, command: str) -> None:
        result = self.runner.run(
            command, self._context(), label=name, task=task.task_id, capture=False
        )
        if not result.ok:
            error(f"Hook {name} {result.describe()} for task {task.task_id}.")
            raise quit_run(self.log, f"error:hook {name} {result.describe()}", 1)

    def reset_task_on_exit(self, exit_code: int) -> None:
        """Hand an abandoned ``in_progress`` task back to the tracker.

        Runs ``commands.reset_task`` only when the run is failing, a task is
        active, and the tracker still reports it ``in_progress``.
        """
        task = self.current
        command = self.config.commands.reset_task
        if exit_code == 0 or task is None or not (command and command.strip()):
            return

        task_id = task.task_id
        result = self.runner.run(
            self.config.commands.task_status,
            self._context(),
            label="task_status",
            task=task_id,
        )
        if not result.ok:
            warn(f"failed to check task status for task {task_id}, skipping reset: task_status {result.describe()}")
            self.log.record(
                "reset_task_skip",
                task=task_id,
                reason="task_status_failed",
                err=f"task_status {result.describe()}",
            )
            return

        token = first_token(result.stdout)
        if not token:
            warn(f"commands.task_status returned an empty status for task {task_id}, skipping reset.")
            self.log.record("reset_task_skip", task=task_id, reason="task_status_empty")
            return
        if TaskStatus.parse(token) is not TaskStatus.IN_PROGRESS:
            self.log.record("reset_task_skip", task=task_id, status=token)
            return

        result = self.runner.run(
            command, self._context(), label="reset_task", task=task_id, capture=False
        )
        if result.ok:
            self.log.record("reset_task", task=task_id)
        else:
            error(f"Failed to reset task {task_id}: reset_task {result.describe()}.")
            self.log.record("reset_task_failed", task=task_id, err=f"reset_task {result.describe()}")
