"""Task status vocabulary and per-task context."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TaskStatus(str, Enum):
    """Statuses trudger understands. Anything else is an unknown token."""

    READY = "ready"
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    BLOCKED = "blocked"

    @classmethod
    def parse(cls, token: str) -> Optional["TaskStatus"]:
        """Return the matching status, or None for an unknown token."""
        try:
            return cls(token)
        except ValueError:
            return None


READY_STATUSES = frozenset({TaskStatus.READY, TaskStatus.OPEN})


def is_ready(token: Optional[str]) -> bool:
    return bool(token) and TaskStatus.parse(token) in READY_STATUSES


class Outcome(str, Enum):
    """Result of one review, derived from the post-review status."""

    CLOSED = "closed"
    BLOCKED = "blocked"
    RETRY = "retry"

    @classmethod
    def from_status(cls, status: TaskStatus) -> "Outcome":
        if status is TaskStatus.CLOSED:
            return cls.CLOSED
        if status is TaskStatus.BLOCKED:
            return cls.BLOCKED
        return cls.RETRY


@dataclass
class TaskContext:
    """What trudger knows about the task being processed.

    Attributes:
        task_id: Validated task ID
        show: Last ``task_show`` output, verbatim
        status: Last status token read from ``task_status``
    """

    task_id: str
    show: Optional[str] = None
    status: Optional[str] = None
