"""tmux process substrate."""

from .runner import (
    FakeTmuxRunner,
    TmuxCommandError,
    TmuxError,
    TmuxExecutionResult,
    TmuxNotFoundError,
    TmuxRunner,
)
from .utils import parse_session_name, session_name, shell_quote, target_for_session

__all__ = [
    "FakeTmuxRunner",
    "TmuxCommandError",
    "TmuxError",
    "TmuxExecutionResult",
    "TmuxNotFoundError",
    "TmuxRunner",
    "parse_session_name",
    "session_name",
    "shell_quote",
    "target_for_session",
]
