"""Configuration management for trudger.

The config is a YAML mapping, by default at ``~/.config/trudger.yml``::

    agent_command: "codex exec"
    agent_review_command: "codex exec review"
    review_loop_limit: 3
    log_path: "./.trudger.log"
    commands:
      next_task: "br ready --json | jq -r '.[0].id // empty'"
      task_show: "br show \\"$TRUDGER_TASK_ID\\""
      task_status: "br show \\"$TRUDGER_TASK_ID\\" --json | jq -r '.[0].status'"
      task_update_status: "br update \\"$TRUDGER_TASK_ID\\" --status \\"$TRUDGER_TARGET_STATUS\\""
    hooks:
      on_completed: "echo done"
      on_requires_human: "echo needs human"

Unknown keys produce warnings, never errors.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from trudger.console import warn
from trudger.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/trudger.yml")

MIGRATION_CODEX_COMMAND = (
    "Migration: codex_command is no longer supported; "
    "use agent_command and agent_review_command."
)


class NotificationScope(str, Enum):
    """Which events reach ``hooks.on_notification``."""

    ALL_LOGS = "all_logs"
    TASK_BOUNDARIES = "task_boundaries"
    RUN_BOUNDARIES = "run_boundaries"


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be empty")
    return value


class Commands(BaseModel):
    """Tracker commands. Each is an opaque shell string."""

    model_config = ConfigDict(frozen=True)

    next_task: Optional[str] = None
    task_show: str
    task_status: str
    task_update_status: str
    reset_task: Optional[str] = None

    @field_validator("task_show", "task_status", "task_update_status")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        return _require_text(value)


class Hooks(BaseModel):
    """Outcome, doctor and notification hooks."""

    model_config = ConfigDict(frozen=True)

    on_completed: str
    on_requires_human: str
    on_doctor_setup: Optional[str] = None
    on_notification: Optional[str] = None
    on_notification_scope: Optional[NotificationScope] = None

    @field_validator("on_completed", "on_requires_human")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        return _require_text(value)

    def notification_command(self) -> Optional[str]:
        """Return the notification hook, or None when unset or blank."""
        if self.on_notification and self.on_notification.strip():
            return self.on_notification
        return None

    def effective_notification_scope(self) -> Optional[NotificationScope]:
        """Scope in force for the notification hook.

        Returns None when no hook is configured. A hook without an explicit
        scope gets ``task_boundaries``.
        """
        if self.notification_command() is None:
            return None
        return self.on_notification_scope or NotificationScope.TASK_BOUNDARIES


class Config(BaseModel):
    """Trudger configuration, immutable for the duration of a run."""

    model_config = ConfigDict(frozen=True)

    agent_command: str
    agent_review_command: str
    commands: Commands
    hooks: Hooks
    review_loop_limit: int = Field(gt=0)
    log_path: Optional[str] = None

    @field_validator("agent_command", "agent_review_command")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        return _require_text(value)

    @property
    def log_file(self) -> Optional[Path]:
        """Transition log sink, or None when logging to a file is disabled."""
        if self.log_path and self.log_path.strip():
            return Path(self.log_path).expanduser()
        return None


_KNOWN_KEYS: Dict[str, set] = {
    "": set(Config.model_fields),
    "commands": set(Commands.model_fields),
    "hooks": set(Hooks.model_fields),
}


def unknown_keys(data: Dict[str, Any]) -> List[str]:
    """List unknown top-level and nested keys as dotted paths."""
    found = [str(key) for key in data if key not in _KNOWN_KEYS[""]]
    for section in ("commands", "hooks"):
        nested = data.get(section)
        if isinstance(nested, dict):
            found.extend(
                f"{section}.{key}" for key in nested if key not in _KNOWN_KEYS[section]
            )
    return found


def _describe_error(error: Dict[str, Any]) -> str:
    label = ".".join(str(part) for part in error["loc"])
    kind = error["type"]
    if kind == "missing":
        return f"Missing required config value: {label}"
    if error.get("input", "") is None:
        return f"{label} must not be null"
    if kind == "value_error":
        return f"{label} {error['msg'].removeprefix('Value error, ')}"
    if kind == "string_type":
        return f"{label} must be a string"
    if kind in ("model_type", "model_attributes_type", "dict_type"):
        return f"{label} must be a mapping"
    if kind == "enum":
        choices = ", ".join(scope.value for scope in NotificationScope)
        return f"{label} must be one of: {choices}"
    if label == "review_loop_limit":
        return "review_loop_limit must be a positive integer"
    return f"{label}: {error['msg']}"


def parse_config(data: Any, source: str = "<config>") -> Config:
    """Validate an already-parsed YAML document.

    Args:
        data: Result of ``yaml.safe_load``
        source: Path used in error messages

    Returns:
        Validated configuration

    Raises:
        ConfigError: If the document is not a mapping, uses a removed key,
            or fails validation
    """
    if not isinstance(data, dict):
        raise ConfigError(f"Config {source} must be a YAML mapping")
    if "codex_command" in data:
        raise ConfigError(MIGRATION_CODEX_COMMAND)

    for key in unknown_keys(data):
        warn(f"Unknown config key: {key}")

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        messages = [_describe_error(error) for error in e.errors()]
        logger.debug("Config validation failed for %s: %s", source, messages)
        raise ConfigError("; ".join(messages)) from e


def load_config(path: Path) -> Config:
    """Load configuration from a YAML file.

    Args:
        path: Path to the config file

    Returns:
        Validated configuration

    Raises:
        ConfigError: If the file cannot be read, parsed or validated
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config {path}: {e}") from e

    return parse_config(data, str(path))


def resolve_config_path(path: Optional[Path] = None) -> Path:
    """Return the config path to use, expanding ``~``."""
    return (path or DEFAULT_CONFIG_PATH).expanduser()
