"""Notification dispatch for trudger.

When ``hooks.on_notification`` is configured, trudger runs it for a subset
of events chosen by ``hooks.on_notification_scope``:

- ``run_boundaries``: ``run_start`` and ``run_end`` (with the exit code)
- ``task_boundaries``: ``task_start`` and ``task_end`` for every task
- ``all_logs``: one ``log`` event per ordinary transition, with the
  rendered transition as the message

The hook sees the event through ``TRUDGER_NOTIFY_*`` variables and through a
JSON file at ``TRUDGER_NOTIFY_PAYLOAD_PATH``. Command text is redacted from
``log`` messages. A failing hook never stops the run; it produces one
warning and one ``notification_hook_failed`` transition recorded on the
internal path, which never comes back here.
"""

import logging
import os
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel

from trudger.commands import CommandContext, CommandRunner
from trudger.config import NotificationScope
from trudger.console import warn
from trudger.events import Transition, TransitionLog, TransitionOrigin

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"


class NotificationEvent(str, Enum):
    RUN_START = "run_start"
    RUN_END = "run_end"
    TASK_START = "task_start"
    TASK_END = "task_end"
    LOG = "log"


SCOPE_EVENTS = {
    NotificationScope.RUN_BOUNDARIES: {NotificationEvent.RUN_START, NotificationEvent.RUN_END},
    NotificationScope.TASK_BOUNDARIES: {NotificationEvent.TASK_START, NotificationEvent.TASK_END},
    NotificationScope.ALL_LOGS: {NotificationEvent.LOG},
}


def _redact_between(text: str, key: str, end_marker: Optional[str] = None) -> str:
    start = text.find(key)
    if start == -1:
        return text
    value_start = start + len(key)
    value_end = len(text)
    if end_marker is not None:
        found = text.find(end_marker, value_start)
        if found != -1:
            value_end = found
    return text[:value_start] + REDACTED + text[value_end:]


def redact_message(message: str) -> str:
    """Hide command text in a rendered transition.

    The value of ``command=`` (up to `` args=``) and the value of ``args=``
    (to the end of the message) are replaced with ``[REDACTED]``.

    Examples:
        "cmd start label=x task=none mode=bash_lc command=echo hi args="
        -> "cmd start label=x task=none mode=bash_lc command=[REDACTED] args=[REDACTED]"
    """
    redacted = _redact_between(message, "command=", " args=")
    return _redact_between(redacted, "args=")


class NotificationPayload(BaseModel):
    """One notification, as exported to the hook."""

    event: NotificationEvent
    duration_ms: int
    folder: str
    exit_code: Optional[int] = None
    task_id: str = ""
    task_description: str = ""
    message: Optional[str] = None

    def to_env(self) -> dict:
        """``TRUDGER_NOTIFY_*`` variables; None means explicitly unset."""
        return {
            "TRUDGER_NOTIFY_EVENT": self.event.value,
            "TRUDGER_NOTIFY_DURATION_MS": str(self.duration_ms),
            "TRUDGER_NOTIFY_FOLDER": self.folder,
            "TRUDGER_NOTIFY_EXIT_CODE": None if self.exit_code is None else str(self.exit_code),
            "TRUDGER_NOTIFY_TASK_ID": self.task_id,
            "TRUDGER_NOTIFY_TASK_DESCRIPTION": self.task_description,
            "TRUDGER_NOTIFY_MESSAGE": self.message,
        }

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


class NotificationDispatcher:
    """Turns run, task and log events into notification hook invocations.

    A dispatcher without a hook, or created with ``enabled=False``, never
    invokes the command runner.

    Args:
        runner: Runner used for ordinary commands; the dispatcher derives a
            notification-origin runner from it
        log: Transition log; ``attach`` subscribes to it for ``all_logs``
        hook: Notification hook command, or None
        scope: Scope in force, or None when no hook is configured
        folder: Reported as ``TRUDGER_NOTIFY_FOLDER`` (default: cwd)
        enabled: False outside normal run mode (e.g. doctor)
        clock: Monotonic clock in seconds
    """

    def __init__(
        self,
        runner: CommandRunner,
        log: TransitionLog,
        hook: Optional[str] = None,
        scope: Optional[NotificationScope] = None,
        folder: Optional[str] = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner.for_origin(TransitionOrigin.NOTIFICATION)
        self.log = log
        self.hook = hook if hook and hook.strip() else None
        self.scope = scope or (NotificationScope.TASK_BOUNDARIES if self.hook else None)
        self.folder = folder if folder is not None else os.getcwd()
        self.enabled = enabled
        self._clock = clock
        self._run_started_at = clock()
        self._task_started_at: Optional[float] = None
        self._run_end_sent = False
        self._attached = False

    @property
    def active(self) -> bool:
        return self.enabled and self.hook is not None

    def wants(self, event: NotificationEvent) -> bool:
        return self.active and self.scope is not None and event in SCOPE_EVENTS[self.scope]

    def attach(self) -> None:
        """Subscribe to the transition log when scope is ``all_logs``.

        Subscribes at most once, however often it is called.
        """
        if self._attached or not self.wants(NotificationEvent.LOG):
            return
        self._attached = True
        self.log.subscribe(self.on_transition)

    def _elapsed_ms(self, since: Optional[float]) -> int:
        if since is None:
            return 0
        return max(int((self._clock() - since) * 1000), 0)

    def on_transition(self, transition: Transition) -> None:
        if transition.origin is not TransitionOrigin.ORDINARY:
            return
        if not self.wants(NotificationEvent.LOG):
            return
        self._dispatch(
            NotificationPayload(
                event=NotificationEvent.LOG,
                duration_ms=self._elapsed_ms(self._run_started_at),
                folder=self.folder,
                message=redact_message(transition.render()),
            )
        )

    def on_run_boundary(
        self, event: NotificationEvent, exit_code: Optional[int] = None
    ) -> None:
        """Handle ``run_start`` or ``run_end``.

        ``run_start`` resets the run clock. ``run_end`` is sent at most once.
        """
        if event is NotificationEvent.RUN_START:
            self._run_started_at = self._clock()
            duration_ms = 0
            exit_code = None
        elif event is NotificationEvent.RUN_END:
            if self._run_end_sent:
                return
            self._run_end_sent = True
            duration_ms = self._elapsed_ms(self._run_started_at)
        else:
            raise ValueError(f"Not a run boundary: {event.value}")

        if not self.wants(event):
            return
        self._dispatch(
            NotificationPayload(
                event=event,
                duration_ms=duration_ms,
                folder=self.folder,
                exit_code=exit_code,
            )
        )

    def on_task_boundary(
        self, event: NotificationEvent, task_id: str, description: str = ""
    ) -> None:
        """Handle ``task_start`` or ``task_end`` for ``task_id``."""
        if event is NotificationEvent.TASK_START:
            self._task_started_at = self._clock()
            duration_ms = 0
        elif event is NotificationEvent.TASK_END:
            duration_ms = self._elapsed_ms(self._task_started_at)
            self._task_started_at = None
        else:
            raise ValueError(f"Not a task boundary: {event.value}")

        if not self.wants(event):
            return
        self._dispatch(
            NotificationPayload(
                event=event,
                duration_ms=duration_ms,
                folder=self.folder,
                task_id=task_id,
                task_description=description,
            )
        )

    def _dispatch(self, payload: NotificationPayload) -> None:
        if self.hook is None:
            return
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                prefix="trudger-notify-",
                suffix=".json",
                encoding="utf-8",
                delete=False,
            ) as f:
                f.write(payload.to_json() + "\n")
                payload_path = Path(f.name)
        except OSError as e:
            self._report_failure(payload, err=f"failed to write notification payload file: {e}")
            return

        context: CommandContext = {
            **payload.to_env(),
            "TRUDGER_NOTIFY_PAYLOAD_PATH": str(payload_path),
        }
        try:
            result = self.runner.run(
                self.hook,
                context,
                label="on_notification",
                task=payload.task_id or None,
                capture=False,
            )
        finally:
            payload_path.unlink(missing_ok=True)

        if result.spawn_error is not None:
            self._report_failure(payload, err=result.spawn_error)
        elif not result.ok:
            self._report_failure(payload, exit_code=result.exit_code)

    def _report_failure(
        self,
        payload: NotificationPayload,
        exit_code: Optional[int] = None,
        err: Optional[str] = None,
    ) -> None:
        task = payload.task_id or "none"
        if exit_code is not None:
            self.log.record_internal(
                "notification_hook_failed",
                event=payload.event.value,
                task=task,
                exit_code=exit_code,
            )
            warn(f"notification hook failed with exit code {exit_code}.")
        else:
            self.log.record_internal(
                "notification_hook_failed",
                event=payload.event.value,
                task=task,
                err=err,
            )
            warn(f"failed to run notification hook: {err}.")
