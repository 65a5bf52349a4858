"""State machine for a single task's solve/review cycle.

Built on the transitions library. Illegal moves (closing a task that was
never solved, reviewing a task that already reached an outcome) raise
:class:`InvalidTransitionError`.

States::

    selected -> status_known -> in_progress -> solved -> closed
                                                 |  ^ -> blocked
                                                 v  |
                                                retry --(limit reached)--> blocked

Every move out of ``solved`` counts one review. ``retry -> solved`` is only
allowed while fewer than ``review_loop_limit`` reviews have run.
"""

from __future__ import annotations

import logging
from typing import Optional

from transitions import Machine, MachineError

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when a trigger is not valid in the current state."""

    def __init__(self, source: str, trigger: str, message: Optional[str] = None) -> None:
        self.source = source
        self.trigger_name = trigger
        if message:
            super().__init__(message)
        else:
            super().__init__(f"Invalid trigger '{trigger}' in state '{source}'")


class TaskStateMachine:
    """Tracks where one task is in the solve/review cycle.

    Example usage:
        >>> sm = TaskStateMachine(review_loop_limit=2)
        >>> for trigger in ("status_checked", "start", "solve", "retry"):
        ...     _ = sm.fire(trigger)
        >>> sm.fire("review_again")
        True
        >>> sm.fire("retry")
        True
        >>> sm.fire("review_again")  # second review used up the limit
        False
    """

    STATES = [
        "selected",
        "status_known",
        "in_progress",
        "solved",
        # Review outcomes
        "closed",
        "blocked",
        "retry",
    ]

    TERMINAL_STATES = frozenset({"closed", "blocked"})

    TRANSITIONS = [
        {"trigger": "status_checked", "source": "selected", "dest": "status_known"},
        {"trigger": "start", "source": "status_known", "dest": "in_progress"},
        {"trigger": "solve", "source": "in_progress", "dest": "solved"},
        # Review outcomes, each consuming one review
        {"trigger": "close", "source": "solved", "dest": "closed", "after": "_count_review"},
        {"trigger": "block", "source": "solved", "dest": "blocked", "after": "_count_review"},
        {"trigger": "retry", "source": "solved", "dest": "retry", "after": "_count_review"},
        # Retry feeds back into another review while the limit allows
        {
            "trigger": "review_again",
            "source": "retry",
            "dest": "solved",
            "conditions": "has_reviews_left",
        },
        # Forced outcome once the limit is used up
        {"trigger": "exhaust", "source": "retry", "dest": "blocked", "unless": "has_reviews_left"},
    ]

    def __init__(self, review_loop_limit: int = 1, initial_state: str = "selected") -> None:
        if review_loop_limit < 1:
            raise ValueError(f"review_loop_limit must be positive, got {review_loop_limit}")
        self.review_loop_limit = review_loop_limit
        self.reviews = 0
        self.machine = Machine(
            model=self,
            states=self.STATES,
            transitions=self.TRANSITIONS,
            initial=initial_state,
            auto_transitions=False,
            send_event=False,
        )

    @property
    def current_state(self) -> str:
        return str(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.current_state in self.TERMINAL_STATES

    def has_reviews_left(self) -> bool:
        return self.reviews < self.review_loop_limit

    def _count_review(self) -> None:
        self.reviews += 1

    def fire(self, trigger: str) -> bool:
        """Fire ``trigger``.

        Returns:
            True if the state changed, False if a condition blocked it

        Raises:
            InvalidTransitionError: If ``trigger`` is not valid in the current state
        """
        source = self.current_state
        try:
            changed = bool(self.trigger(trigger))
        except (MachineError, AttributeError) as e:
            raise InvalidTransitionError(source, trigger) from e
        if changed:
            logger.debug(f"Task state {source} -> {self.current_state} via {trigger}")
        return changed

    def get_valid_triggers(self) -> list[str]:
        """Triggers defined for the current state (conditions not evaluated)."""
        return sorted(self.machine.get_triggers(self.current_state))
