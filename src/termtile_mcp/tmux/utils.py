"""Helpers for building tmux and agent command lines."""

from __future__ import annotations

import os
import re
import shlex
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

_SHELL_SPECIAL = set(" \t\r\n'\"\\$`(){}[]*?!;|&<>")

SESSION_PREFIX = "termtile-"
_SESSION_PATTERN = re.compile(r"^termtile-(.+)-(\d+)$")
_UNSAFE_NAME_CHARS = re.compile(r"[^\w.\-]+")


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def shell_quote(value: str) -> str:
    """Single-quote ``value`` for a POSIX shell, leaving plain words untouched."""

    if value == "":
        return "''"
    if not any(char in _SHELL_SPECIAL for char in value):
        return value
    return "'" + value.replace("'", "'\\''") + "'"


def split_command(command: str) -> list[str]:
    """Split a shell-like template into argv, honouring quotes and escapes."""

    try:
        return shlex.split(command)
    except ValueError as exc:
        raise ValueError(f"invalid command template {command!r}: {exc}") from exc


def render_spawn_template(template: str, directory: str, command: str) -> list[str]:
    """Fill ``{{dir}}`` and ``{{cmd}}`` in a terminal launch template.

    ``{{cmd}}`` may expand to several words, which become separate arguments.
    When it expands to nothing the flag introducing it (``-e``, ``--``) is dropped.
    """

    argv: list[str] = []
    for arg in split_command(template):
        had_cmd = "{{cmd}}" in arg
        arg = arg.replace("{{dir}}", directory).replace("{{cmd}}", command).strip()
        if not arg:
            if had_cmd and not command and argv and argv[-1].startswith("-"):
                argv.pop()
            continue
        if had_cmd and command:
            parts = split_command(arg)
            if parts:
                argv.extend(parts)
                continue
        argv.append(arg)
    return argv


def sanitize_workspace_name(workspace: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("_", workspace.strip()).strip("_")
    return cleaned or "workspace"


def session_name(workspace: str, slot: int) -> str:
    """Return the tmux session name used for a window-mode agent."""

    return f"{SESSION_PREFIX}{sanitize_workspace_name(workspace)}-{slot}"


def target_for_session(name: str) -> str:
    return f"{name}:0.0"


def parse_session_name(name: str) -> tuple[str, int] | None:
    """Split ``termtile-{workspace}-{slot}`` into its parts, or ``None``."""

    match = _SESSION_PATTERN.match(name.strip())
    if match is None:
        return None
    return match.group(1), int(match.group(2))


__all__ = [
    "SESSION_PREFIX",
    "parse_session_name",
    "render_spawn_template",
    "sanitize_environment",
    "sanitize_workspace_name",
    "session_name",
    "shell_quote",
    "split_command",
    "target_for_session",
]
