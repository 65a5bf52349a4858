"""Task selection for trudger.

Manual task IDs (``-t/--task``) are processed first, in order. Every manual
task must be ready before any work starts. After the manual queue is empty,
tasks come from ``commands.next_task``:

- exit 1 or empty output: nothing to do, the run ends idle
- any other non-zero exit: the run aborts with that exit code
- otherwise the first whitespace token must be a valid task ID

A candidate whose status is not ``ready``/``open`` is skipped. After
``TRUDGER_SKIP_NOT_READY_LIMIT`` skips in a row (default 5) the run ends idle.
"""

import logging
import os
from typing import Callable, Iterator, List, Mapping, Optional

from trudger.commands import CommandContext, CommandRunner
from trudger.console import error
from trudger.errors import quit_run
from trudger.events import TransitionLog
from trudger.ids import InvalidTaskIdError, first_token, validate_task_id
from trudger.tasks import TaskContext, is_ready

logger = logging.getLogger(__name__)

DEFAULT_SKIP_NOT_READY_LIMIT = 5
SKIP_NOT_READY_LIMIT_ENV = "TRUDGER_SKIP_NOT_READY_LIMIT"

# Runs task_status for a task ID and returns the first token of its output.
StatusReader = Callable[[str], str]


def skip_not_ready_limit(environ: Optional[Mapping[str, str]] = None) -> int:
    """Read the skip bound from the environment.

    Values that are not integers, or are below 1, are ignored.
    """
    raw = (os.environ if environ is None else environ).get(SKIP_NOT_READY_LIMIT_ENV, "")
    try:
        value = int(raw.strip())
    except ValueError:
        return DEFAULT_SKIP_NOT_READY_LIMIT
    return value if value >= 1 else DEFAULT_SKIP_NOT_READY_LIMIT


class TaskSelector:
    """Yields the tasks a run should process, in order.

    Iterating the selector yields a :class:`TaskContext` per task, with the
    status read during selection already filled in. Iteration stops when the
    run should end idle; ``idle_reason`` then says why. Fatal problems raise
    :class:`Quit`.

    Args:
        runner: Runs ``next_task``
        log: Transition log
        next_task_command: ``commands.next_task``, or None when only manual
            tasks are processed
        read_status: Returns the status token for a task ID
        manual_tasks: Validated task IDs from ``-t/--task``
        check_interrupted: Raises Quit when the run was interrupted
        skip_limit: Maximum consecutive not-ready candidates
        context: Extra ``TRUDGER_*`` variables for ``next_task``
    """

    def __init__(
        self,
        runner: CommandRunner,
        log: TransitionLog,
        next_task_command: Optional[str],
        read_status: StatusReader,
        manual_tasks: Optional[List[str]] = None,
        check_interrupted: Callable[[], None] = lambda: None,
        skip_limit: int = DEFAULT_SKIP_NOT_READY_LIMIT,
        context: Callable[[], CommandContext] = dict,
    ):
        self.runner = runner
        self.log = log
        self.next_task_command = next_task_command
        self.read_status = read_status
        self.manual_tasks = list(manual_tasks or [])
        self.check_interrupted = check_interrupted
        self.skip_limit = skip_limit
        self.context = context
        self.idle_reason: Optional[str] = None

    def __iter__(self) -> Iterator[TaskContext]:
        self.check_interrupted()
        yield from self._manual()

        command = self.next_task_command
        if not (command and command.strip()):
            self._idle("missing_next_task_command")
            return

        while True:
            task = self._select_from_next_task(command)
            if task is None:
                return
            yield task

    def _manual(self) -> Iterator[TaskContext]:
        statuses = {}
        for task_id in self.manual_tasks:
            self.check_interrupted()
            status = self.read_status(task_id)
            if not is_ready(status):
                error(f"Task {task_id} is not ready (status: {status or 'missing'}).")
                raise quit_run(self.log, f"task_not_ready:{task_id}", 1)
            statuses[task_id] = status

        while self.manual_tasks:
            self.check_interrupted()
            task_id = self.manual_tasks.pop(0)
            yield TaskContext(task_id=task_id, status=statuses[task_id])

    def _select_from_next_task(self, command: str) -> Optional[TaskContext]:
        skipped = 0
        while True:
            self.check_interrupted()
            task_id = self._next_task_id(command)
            if task_id is None:
                return None

            status = self.read_status(task_id)
            if not status:
                error(f"Task {task_id} missing status.")
                raise quit_run(self.log, f"task_missing_status:{task_id}", 1)
            if is_ready(status):
                return TaskContext(task_id=task_id, status=status)

            self.log.record("skip_not_ready", task=task_id, status=status)
            skipped += 1
            if skipped >= self.skip_limit:
                self.log.record("idle no_ready_task", attempts=skipped)
                error(f"Task {task_id} is not ready (status: {status}).")
                self.idle_reason = "no_ready_task"
                return None

    def _next_task_id(self, command: str) -> Optional[str]:
        result = self.runner.run(command, self.context(), label="next-task")
        if result.exit_code == 1:
            self.log.record("idle next_task_exit=1")
            self.idle_reason = "no_next_task"
            return None
        if not result.ok:
            error(f"next_task command {result.describe()}.")
            raise quit_run(self.log, f"next_task_failed:{result.exit_code}", result.exit_code)

        token = first_token(result.stdout)
        if not token:
            self._idle("no_task")
            return None
        try:
            return validate_task_id(token)
        except InvalidTaskIdError as e:
            error(f"next_task returned an invalid task id: {token} ({e.reason})")
            raise quit_run(self.log, f"next_task_invalid_task_id:{e.reason}", 1) from e

    def _idle(self, reason: str) -> None:
        self.log.record(f"idle {reason}")
        self.idle_reason = reason
