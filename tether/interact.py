"""Synchronous operator prompts (confirmation and free-text answers)."""

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import FormattedText

from . import fmt
from .report import ToolExecutionError


def _session() -> PromptSession:
    return PromptSession()


def confirm(message: str) -> bool:
    """Ask a yes/no question; anything but an explicit yes declines."""
    fmt.ensure_newline()
    prompt_text = FormattedText(
        [("bold fg:ansiyellow", message), ("", " "), ("fg:ansibrightblack", "[y/N] ")]
    )
    try:
        answer = _session().prompt(prompt_text)
    except (EOFError, KeyboardInterrupt):
        return False
    return answer.strip().lower() in ("y", "yes")


def read_line(message: str) -> str:
    """Read one line of text from the operator."""
    fmt.ensure_newline()
    prompt_text = FormattedText(
        [("bold fg:ansigreen", message), ("", "\n"), ("bold fg:ansigreen", "> ")]
    )
    try:
        return _session().prompt(prompt_text)
    except (EOFError, KeyboardInterrupt) as e:
        raise ToolExecutionError("no answer was given on stdin") from e
