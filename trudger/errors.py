"""Exception types shared across trudger."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from trudger.events import TransitionLog


class TrudgerError(Exception):
    """Base class for all trudger errors."""


class ConfigError(TrudgerError):
    """Raised when the configuration file is missing, malformed or invalid."""


class PromptError(TrudgerError):
    """Raised when a prompt file cannot be loaded."""


class Quit(TrudgerError):
    """Abort the current run with an exit code and a machine-readable reason.

    Create instances through :func:`quit_run` so that the
    ``quit`` transition is always recorded.
    """

    def __init__(self, code: int, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(f"quit ({code}): {reason}")


def quit_run(log: "TransitionLog", reason: str, code: int) -> Quit:
    """Record ``quit reason=...`` and return the matching :class:`Quit`.

    Use as ``raise quit_run(log, "interrupted", 130)``. A blank reason is
    logged as ``unknown``.
    """
    log.record("quit", reason=reason if reason.strip() else "unknown")
    return Quit(code, reason)
