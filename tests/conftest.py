"""Pytest configuration and fixtures for trudger tests.

Commands run through ``bash -c`` rather than ``bash -lc`` during tests so
that login profiles on the test machine cannot print into captured stdout.
"""

import os
from pathlib import Path
from typing import Any, Callable, List

import pytest
from click.testing import CliRunner

from trudger.events import TransitionLog


@pytest.fixture(autouse=True)
def non_login_shell(monkeypatch):
    """Run commands without login profiles."""
    monkeypatch.setattr("trudger.commands.DEFAULT_SHELL", ("bash", "-c"))
    monkeypatch.delenv("BASH_ENV", raising=False)


@pytest.fixture(autouse=True)
def clean_trudger_environment(monkeypatch):
    """Remove any TRUDGER_* variables inherited from the developer's shell."""
    for key in list(os.environ):
        if key.startswith("TRUDGER_"):
            monkeypatch.delenv(key)


@pytest.fixture
def cli_runner():
    """Create a Click test runner."""
    return CliRunner()


@pytest.fixture
def log_path(tmp_path: Path) -> Path:
    return tmp_path / "trudger.log"


@pytest.fixture
def transition_log(log_path: Path) -> TransitionLog:
    return TransitionLog(log_path)


@pytest.fixture
def log_lines(log_path: Path) -> Callable[[], List[str]]:
    """Return a function reading the transition log without timestamps."""

    def read() -> List[str]:
        if not log_path.exists():
            return []
        return [line.split(" ", 1)[1] for line in log_path.read_text().splitlines()]

    return read


@pytest.fixture
def config_data() -> dict[str, Any]:
    """Minimal valid configuration as loaded from YAML."""
    return {
        "agent_command": "true",
        "agent_review_command": "true",
        "review_loop_limit": 2,
        "commands": {
            "next_task": "exit 1",
            "task_show": "echo show",
            "task_status": "echo ready",
            "task_update_status": "true",
        },
        "hooks": {
            "on_completed": "true",
            "on_requires_human": "true",
        },
    }
