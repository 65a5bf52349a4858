"""Task ID validation and parsing.

This module is the single source of truth for what counts as a task ID.
Task IDs come from two places: the ``next_task`` command output and the
``-t/--task`` CLI option. Both go through :func:`validate_task_id`.

A valid task ID:
- is non-empty and at most 200 UTF-8 bytes long
- starts with an ASCII letter or digit
- continues with ASCII letters, digits, ``.``, ``_``, ``:`` or ``-``
"""

import re
from typing import Iterable, List

from trudger.errors import TrudgerError

MAX_TASK_ID_BYTES = 200

_BODY_CHAR = re.compile(r"[A-Za-z0-9._:-]")

REASON_EMPTY = "empty"
REASON_TOO_LONG = "too_long"
REASON_INVALID_FIRST_CHAR = "invalid_first_char"
REASON_INVALID_CHAR = "invalid_char"
REASON_EMPTY_SEGMENT = "empty_segment"


class InvalidTaskIdError(TrudgerError):
    """Raised when a string is not a valid task ID.

    Attributes:
        value: The rejected input
        reason: Machine-readable reason, one of the ``REASON_*`` constants
    """

    def __init__(self, value: str, reason: str, message: str = ""):
        self.value = value
        self.reason = reason
        super().__init__(message or f"Invalid task id {value!r}: {reason}")


def validate_task_id(value: str) -> str:
    """Validate a task ID and return it unchanged.

    Args:
        value: Candidate task ID (already trimmed by the caller)

    Returns:
        The same string

    Raises:
        InvalidTaskIdError: With ``reason`` set to ``empty``, ``too_long``,
            ``invalid_first_char`` or ``invalid_char``
    """
    if not value:
        raise InvalidTaskIdError(value, REASON_EMPTY)
    if len(value.encode("utf-8")) > MAX_TASK_ID_BYTES:
        raise InvalidTaskIdError(value, REASON_TOO_LONG)
    first = value[0]
    if not (first.isascii() and first.isalnum()):
        raise InvalidTaskIdError(value, REASON_INVALID_FIRST_CHAR)
    for char in value[1:]:
        if not _BODY_CHAR.fullmatch(char):
            raise InvalidTaskIdError(value, REASON_INVALID_CHAR)
    return value


def is_valid_task_id(value: str) -> bool:
    try:
        validate_task_id(value)
    except InvalidTaskIdError:
        return False
    return True


def first_token(text: str) -> str:
    """Return the first whitespace-separated token of ``text``, or ``""``."""
    parts = text.split()
    return parts[0] if parts else ""


def parse_manual_tasks(raw_values: Iterable[str]) -> List[str]:
    """Parse repeated ``-t/--task`` values into an ordered list of task IDs.

    Each value may hold a comma-separated list. Segments are trimmed;
    an empty segment (``"a,,b"`` or ``"a,"``) is an error, as is any
    segment that fails :func:`validate_task_id`.

    Examples:
        ["tr-1"] -> ["tr-1"]
        ["tr-1, tr-2", "tr-3"] -> ["tr-1", "tr-2", "tr-3"]

    Raises:
        InvalidTaskIdError: On the first bad segment
    """
    tasks: List[str] = []
    for raw in raw_values:
        for index, segment in enumerate(raw.split(",")):
            task_id = segment.strip()
            if not task_id:
                raise InvalidTaskIdError(
                    raw,
                    REASON_EMPTY_SEGMENT,
                    f"Invalid -t/--task value: empty segment in {raw!r} at index {index}.",
                )
            try:
                validate_task_id(task_id)
            except InvalidTaskIdError as e:
                raise InvalidTaskIdError(
                    task_id,
                    e.reason,
                    f"Invalid -t/--task value {task_id!r}: {e.reason}.",
                ) from e
            tasks.append(task_id)
    return tasks
