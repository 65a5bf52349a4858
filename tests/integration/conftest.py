"""Integration test fixtures: a file-based tracker driven by real shell commands.

Each task is a ``<id>.status`` file in the tracker directory. ``next_task``
prints the first ready task in insertion order. The review agent pops the next
line of ``<id>.review`` into the status file, which is how tests script the
outcome of each review. Agents and hooks append what they saw to files the
tests read back.
"""

import shlex
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pytest

from trudger.commands import CommandRunner
from trudger.config import Config, parse_config
from trudger.events import TransitionLog
from trudger.notifications import NotificationDispatcher
from trudger.prompts import Prompts
from trudger.run_loop import InterruptFlag, RunLoop

PROMPTS = Prompts(solve="solve prompt", review="review prompt")


class FakeTracker:
    """A directory of status files plus the commands that drive it."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / "order").write_text("")

    @property
    def dir(self) -> str:
        return shlex.quote(str(self.root))

    def add(self, task_id: str, status: str = "ready", reviews: Iterable[str] = ()) -> None:
        """Add a task; ``reviews`` are the statuses successive reviews leave behind."""
        (self.root / f"{task_id}.status").write_text(f"{status}\n")
        reviews = list(reviews)
        if reviews:
            (self.root / f"{task_id}.review").write_text("".join(f"{r}\n" for r in reviews))
        with open(self.root / "order", "a") as f:
            f.write(f"{task_id}\n")

    def status(self, task_id: str) -> str:
        return (self.root / f"{task_id}.status").read_text().strip()

    def lines(self, name: str) -> List[str]:
        path = self.root / name
        if not path.exists():
            return []
        return path.read_text().splitlines()

    def config_data(self, **overrides: Any) -> Dict[str, Any]:
        """Config dict wired to this tracker; ``commands``/``hooks`` overrides merge."""
        d = self.dir
        data: Dict[str, Any] = {
            "agent_command": f'echo "solve $TRUDGER_TASK_ID" >> {d}/agent.log',
            "agent_review_command": (
                f'echo "review $TRUDGER_TASK_ID" >> {d}/agent.log; '
                f'f={d}/"$TRUDGER_TASK_ID".review; '
                'if [ -s "$f" ]; then '
                f'head -n1 "$f" > {d}/"$TRUDGER_TASK_ID".status; '
                'tail -n +2 "$f" > "$f.tmp"; mv "$f.tmp" "$f"; fi'
            ),
            "review_loop_limit": 2,
            "commands": {
                "next_task": (
                    f"for id in $(cat {d}/order); do "
                    f's=$(cat {d}/"$id".status); '
                    'if [ "$s" = ready ] || [ "$s" = open ]; then echo "$id"; exit 0; fi; '
                    "done; exit 1"
                ),
                "task_show": f'echo "Task $TRUDGER_TASK_ID"; cat {d}/"$TRUDGER_TASK_ID".status',
                "task_status": f'cat {d}/"$TRUDGER_TASK_ID".status',
                "task_update_status": (
                    f'echo "$TRUDGER_TARGET_STATUS" > {d}/"$TRUDGER_TASK_ID".status; '
                    f'echo "$TRUDGER_TASK_ID $TRUDGER_TARGET_STATUS" >> {d}/updates'
                ),
            },
            "hooks": {
                "on_completed": f'echo "$TRUDGER_TASK_ID" >> {d}/completed',
                "on_requires_human": f'echo "$TRUDGER_TASK_ID" >> {d}/needs_human',
            },
        }
        for section in ("commands", "hooks"):
            data[section].update(overrides.pop(section, {}))
        data.update(overrides)
        return data

    def config(self, **overrides: Any) -> Config:
        return parse_config(self.config_data(**overrides), source="test")


@pytest.fixture
def tracker(tmp_path: Path) -> FakeTracker:
    return FakeTracker(tmp_path / "tracker")


@pytest.fixture
def run_trudger(tmp_path: Path, transition_log: TransitionLog):
    """Run a full RunLoop against a config and return its exit code."""

    def run(
        config: Config,
        manual_tasks: Optional[List[str]] = None,
        interrupt: Optional[InterruptFlag] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> int:
        runner = CommandRunner(transition_log, tmp_path / "trudger.yml", cwd=tmp_path)
        dispatcher = NotificationDispatcher(
            runner,
            transition_log,
            hook=config.hooks.notification_command(),
            scope=config.hooks.effective_notification_scope(),
            folder=str(tmp_path),
        )
        loop = RunLoop(
            config,
            PROMPTS,
            transition_log,
            runner,
            dispatcher=dispatcher,
            manual_tasks=manual_tasks,
            interrupt=interrupt,
            environ=environ or {},
        )
        return loop.run()

    return run
