"""Prompt loading for trudger.

The solve and review prompts are markdown files under ``~/.codex/prompts``.
A leading YAML frontmatter block (``---`` ... ``---``) is metadata for the
agent tooling and is stripped before the prompt is exported as
``TRUDGER_PROMPT`` / ``TRUDGER_REVIEW_PROMPT``.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from trudger.errors import PromptError

PROMPTS_DIR = Path(".codex") / "prompts"
SOLVE_PROMPT_FILE = "trudge.md"
REVIEW_PROMPT_FILE = "trudge_review.md"


@dataclass(frozen=True)
class Prompts:
    solve: str
    review: str


def strip_frontmatter(content: str) -> str:
    """Remove a leading frontmatter block and the trailing newline.

    Example:
        >>> strip_frontmatter("---\\ndescription: x\\n---\\nDo the task.\\n")
        'Do the task.'
    """
    lines = content.splitlines()
    if lines and lines[0] == "---":
        try:
            end = lines.index("---", 1)
        except ValueError:
            # Unterminated block: everything after the opener is frontmatter.
            return ""
        lines = lines[end + 1 :]
    return "\n".join(lines)


def render_prompt(path: Path) -> str:
    """Read a prompt file and strip its frontmatter.

    Raises:
        PromptError: If the file is missing or unreadable
    """
    if not path.is_file():
        raise PromptError(f"Missing prompt file: {path}")
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PromptError(f"Failed to read prompt {path}: {e}") from e
    return strip_frontmatter(content)


def load_prompts(home: Optional[Path] = None) -> Prompts:
    """Load both prompts from ``<home>/.codex/prompts``."""
    prompts_dir = (home or Path.home()) / PROMPTS_DIR
    return Prompts(
        solve=render_prompt(prompts_dir / SOLVE_PROMPT_FILE),
        review=render_prompt(prompts_dir / REVIEW_PROMPT_FILE),
    )
