"""Transition log for trudger.

Every observable step of a run is recorded as a :class:`Transition`: a
message plus ordered ``key=value`` fields. Transitions are appended to an
optional log file, one line each::

    2026-01-05T12:00:00Z cmd start label=task_show task=tr-1 mode=bash_lc command=br show args=

Line breaks and tabs inside values are escaped so that every record stays on
one line. Command text is logged unredacted; redaction only applies to
notification payloads (see ``trudger.notifications``).

Listeners subscribed with :meth:`TransitionLog.subscribe` see every
*ordinary* transition. Transitions recorded with
:meth:`TransitionLog.record_internal` are tagged as notification-originated
and are written to the file only.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from trudger.console import warn

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class TransitionOrigin(str, Enum):
    ORDINARY = "ordinary"
    NOTIFICATION = "notification"


def sanitize_log_value(value: str) -> str:
    """Escape ``\\n``, ``\\r`` and ``\\t`` so a value fits on one log line."""
    return value.replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")


def _format_value(value: Any) -> str:
    if value is None:
        return "none"
    return str(value)


@dataclass(frozen=True)
class Transition:
    """One recorded event."""

    timestamp: datetime
    message: str
    fields: Tuple[Tuple[str, str], ...] = ()
    origin: TransitionOrigin = TransitionOrigin.ORDINARY

    def render(self) -> str:
        """Message and fields as a single sanitized line (no timestamp)."""
        parts = [self.message]
        parts.extend(f"{key}={value}" for key, value in self.fields)
        return sanitize_log_value(" ".join(parts))

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for name, value in self.fields:
            if name == key:
                return value
        return default

    def format_line(self) -> str:
        return f"{self.timestamp.strftime(TIMESTAMP_FORMAT)} {self.render()}\n"


Listener = Callable[[Transition], None]


class TransitionLog:
    """Records transitions and appends them to an optional log file.

    A write failure disables the file sink for the rest of the run after a
    single warning; recording (and listener dispatch) keeps working.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.path = path
        self._clock = clock
        self._disabled = False
        self._listeners: List[Listener] = []

    @property
    def enabled(self) -> bool:
        return self.path is not None and not self._disabled

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def record(self, message: str, **fields: Any) -> Transition:
        """Record an ordinary transition and hand it to every listener.

        Args:
            message: Event name, e.g. ``"cmd start"`` or ``"completed"``
            **fields: Ordered ``key=value`` pairs; None renders as ``none``

        Returns:
            The recorded transition
        """
        transition = self._build(message, fields, TransitionOrigin.ORDINARY)
        self._write(transition)
        for listener in self._listeners:
            listener(transition)
        return transition

    def record_internal(self, message: str, **fields: Any) -> Transition:
        """Record a notification-originated transition.

        Written to the log file like any other transition but never passed
        to listeners, so reporting a notification failure cannot trigger
        another notification.
        """
        transition = self._build(message, fields, TransitionOrigin.NOTIFICATION)
        self._write(transition)
        return transition

    def _build(self, message: str, fields: dict, origin: TransitionOrigin) -> Transition:
        return Transition(
            timestamp=self._clock(),
            message=message,
            fields=tuple((key, _format_value(value)) for key, value in fields.items()),
            origin=origin,
        )

    def _write(self, transition: Transition) -> None:
        if self.path is None or self._disabled:
            return
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(transition.format_line())
        except OSError as e:
            self._disabled = True
            logger.debug("Transition log write failed", exc_info=True)
            warn(f"transition logging disabled log_path={self.path} io_error={e}")
