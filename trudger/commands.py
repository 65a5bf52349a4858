"""Command execution for trudger.

Every tracker command, agent command and hook is an opaque shell string
executed as ``bash -lc <command>``. Context reaches the command only through
``TRUDGER_*`` environment variables; nothing is appended to the command line.

The environment is rebuilt for every call:

- every known ``TRUDGER_*`` key is removed from the inherited environment,
  then set again only if the caller supplied a value
- each value is capped at ``ENV_VALUE_MAX_BYTES`` (cut on a UTF-8 boundary)
- when the ``TRUDGER_*`` payload as a whole exceeds ``ENV_TOTAL_MAX_BYTES``,
  the large free-text values are shrunk first (task show, then prompts)

Each truncation prints one warning and records one transition.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple

from trudger.console import warn
from trudger.events import TransitionLog, TransitionOrigin

logger = logging.getLogger(__name__)

DEFAULT_SHELL: Tuple[str, ...] = ("bash", "-lc")

ENV_VALUE_MAX_BYTES = 64 * 1024
ENV_TOTAL_MAX_BYTES = 128 * 1024

SPAWN_FAILURE_EXIT_CODE = 127

TRUDGER_ENV_KEYS = (
    "TRUDGER_CONFIG_PATH",
    "TRUDGER_DOCTOR_SCRATCH_DIR",
    "TRUDGER_TASK_ID",
    "TRUDGER_TASK_SHOW",
    "TRUDGER_TASK_STATUS",
    "TRUDGER_TARGET_STATUS",
    "TRUDGER_PROMPT",
    "TRUDGER_REVIEW_PROMPT",
    "TRUDGER_COMPLETED",
    "TRUDGER_NEEDS_HUMAN",
    "TRUDGER_NOTIFY_EVENT",
    "TRUDGER_NOTIFY_DURATION_MS",
    "TRUDGER_NOTIFY_FOLDER",
    "TRUDGER_NOTIFY_EXIT_CODE",
    "TRUDGER_NOTIFY_TASK_ID",
    "TRUDGER_NOTIFY_TASK_DESCRIPTION",
    "TRUDGER_NOTIFY_MESSAGE",
    "TRUDGER_NOTIFY_PAYLOAD_PATH",
)

# Shrunk in this order when the total payload is over budget.
REDUCIBLE_ENV_KEYS = ("TRUDGER_TASK_SHOW", "TRUDGER_PROMPT", "TRUDGER_REVIEW_PROMPT")

CommandContext = Mapping[str, Optional[str]]


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command run.

    Attributes:
        exit_code: Process exit code; 127 when the process could not be spawned
        stdout: Captured stdout (empty when stdio was inherited)
        spawn_error: Description of the spawn failure, if any
    """

    exit_code: int
    stdout: str = ""
    spawn_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def describe(self) -> str:
        """Human-readable failure summary, e.g. ``failed with exit code 2``."""
        if self.spawn_error is not None:
            return f"could not be started: {self.spawn_error}"
        return f"failed with exit code {self.exit_code}"


def truncate_utf8(value: str, max_bytes: int) -> str:
    """Cut ``value`` to at most ``max_bytes`` UTF-8 bytes without splitting a character."""
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def utf8_len(value: str) -> int:
    return len(value.encode("utf-8"))


def _entry_bytes(key: str, value: str, max_bytes: int) -> int:
    # Approximates execve accounting for "KEY=VALUE\0".
    return len(key) + 1 + utf8_len(truncate_utf8(value, max_bytes)) + 1


def _payload_bytes(values: Mapping[str, str], limits: Mapping[str, int]) -> int:
    return sum(_entry_bytes(key, value, limits[key]) for key, value in values.items())


class CommandRunner:
    """Runs shell commands with an assembled ``TRUDGER_*`` environment.

    Args:
        log: Transition log receiving ``cmd start``/``cmd exit`` records
        config_path: Exported to every command as ``TRUDGER_CONFIG_PATH``
        cwd: Working directory for commands (default: inherit)
        base_env: Environment to start from (default: ``os.environ``)
        origin: ``NOTIFICATION`` makes every transition this runner records
            notification-originated, so it never reaches log listeners
    """

    def __init__(
        self,
        log: TransitionLog,
        config_path: Path | str,
        cwd: Optional[Path] = None,
        base_env: Optional[Mapping[str, str]] = None,
        origin: TransitionOrigin = TransitionOrigin.ORDINARY,
        shell: Optional[Sequence[str]] = None,
    ):
        self.log = log
        self.config_path = str(config_path)
        self.cwd = cwd
        self.base_env = base_env
        self.origin = origin
        self.shell = tuple(shell) if shell is not None else DEFAULT_SHELL

    def for_origin(self, origin: TransitionOrigin) -> "CommandRunner":
        """Return a runner identical to this one but recording with ``origin``."""
        return CommandRunner(
            self.log,
            self.config_path,
            cwd=self.cwd,
            base_env=self.base_env,
            origin=origin,
            shell=self.shell,
        )

    def _record(self, message: str, **fields: object) -> None:
        if self.origin is TransitionOrigin.NOTIFICATION:
            self.log.record_internal(message, **fields)
        else:
            self.log.record(message, **fields)

    def build_env(
        self,
        context: Optional[CommandContext] = None,
        label: str = "",
        task: str = "none",
    ) -> Dict[str, str]:
        """Assemble the environment for one command.

        Args:
            context: ``TRUDGER_*`` values; None values are explicitly absent
            label: Command label used in truncation transitions
            task: Task token used in truncation transitions

        Returns:
            Complete environment mapping for the child process
        """
        env = dict(os.environ if self.base_env is None else self.base_env)
        for key in TRUDGER_ENV_KEYS:
            env.pop(key, None)

        values: Dict[str, str] = {"TRUDGER_CONFIG_PATH": self.config_path}
        for key, value in (context or {}).items():
            if value is not None:
                values[key] = value

        limits = self._value_limits(values, label, task)
        for key, value in values.items():
            env[key] = self._apply_limit(key, value, limits[key], label, task)
        return env

    def _value_limits(
        self, values: Mapping[str, str], label: str, task: str
    ) -> Dict[str, int]:
        limits = {key: ENV_VALUE_MAX_BYTES for key in values}
        total = _payload_bytes(values, limits)
        if total <= ENV_TOTAL_MAX_BYTES:
            return limits

        over = total - ENV_TOTAL_MAX_BYTES
        for key in REDUCIBLE_ENV_KEYS:
            if over == 0 or key not in values:
                continue
            current = utf8_len(truncate_utf8(values[key], limits[key]))
            if current == 0:
                continue
            limits[key] = min(limits[key], max(current - over, 0))
            reduced = current - utf8_len(truncate_utf8(values[key], limits[key]))
            over = max(over - reduced, 0)

        new_total = _payload_bytes(values, limits)
        if new_total < total:
            warn(
                f"TRUDGER_* env payload is {total} bytes; "
                f"truncating to {new_total} bytes for command execution."
            )
            self._record(
                "env_truncate_total",
                label=label,
                task=task,
                original_bytes=total,
                truncated_bytes=new_total,
            )
        return limits

    def _apply_limit(
        self, key: str, value: str, max_bytes: int, label: str, task: str
    ) -> str:
        rendered = truncate_utf8(value, max_bytes)
        original_bytes = utf8_len(value)
        truncated_bytes = utf8_len(rendered)
        if truncated_bytes != original_bytes:
            warn(
                f"{key} is {original_bytes} bytes; "
                f"truncating to {truncated_bytes} bytes for command execution."
            )
            self._record(
                "env_truncate",
                label=label,
                task=task,
                key=key,
                original_bytes=original_bytes,
                truncated_bytes=truncated_bytes,
            )
        return rendered

    def run(
        self,
        command: str,
        context: Optional[CommandContext] = None,
        *,
        label: str,
        task: Optional[str] = None,
        capture: bool = True,
    ) -> CommandResult:
        """Run one shell command to completion.

        Args:
            command: Shell string, passed verbatim to ``bash -lc``
            context: ``TRUDGER_*`` variables for this call
            label: Short name for logs (``task_show``, ``agent_solve``, ...)
            task: Current task ID, logged as ``none`` when absent
            capture: Capture stdout; otherwise stdio is inherited

        Returns:
            CommandResult. A spawn failure is reported as exit code 127 with
            ``spawn_error`` set, never raised.
        """
        task_token = task or "none"
        if not command:
            return CommandResult(exit_code=0)

        self._record(
            "cmd start",
            label=label,
            task=task_token,
            mode="bash_lc",
            command=command,
            args="",
        )
        env = self.build_env(context, label=label, task=task_token)

        try:
            completed = subprocess.run(
                [*self.shell, command],
                env=env,
                cwd=self.cwd,
                stdout=subprocess.PIPE if capture else None,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except (OSError, ValueError) as e:
            # ValueError: a NUL byte in the command or an env value.
            logger.debug(f"Failed to spawn {label}: {e}")
            self._record("cmd spawn_failed", label=label, task=task_token, err=str(e))
            return CommandResult(
                exit_code=SPAWN_FAILURE_EXIT_CODE,
                spawn_error=f"Failed to run command '{command}': {e}",
            )

        # Killed by a signal: there is no exit status to report.
        exit_code = completed.returncode if completed.returncode >= 0 else 1
        self._record("cmd exit", label=label, task=task_token, exit=exit_code)
        return CommandResult(exit_code=exit_code, stdout=completed.stdout or "")
