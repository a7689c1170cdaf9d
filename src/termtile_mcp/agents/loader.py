"""Configuration loading for agent definitions."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .models import TermtileConfig


class ConfigLoadError(RuntimeError):
    """Raised when the termtile configuration file cannot be parsed."""


BUILTIN_TERMINAL_SPAWN_COMMANDS: dict[str, str] = {
    "kitty": "kitty --directory {{dir}} {{cmd}}",
    "Alacritty": "alacritty --working-directory {{dir}} -e {{cmd}}",
    "com.mitchellh.ghostty": "ghostty --working-directory={{dir}} -e {{cmd}}",
    "ghostty": "ghostty --working-directory={{dir}} -e {{cmd}}",
    "wezterm": "wezterm start --cwd {{dir}} -- {{cmd}}",
    "Gnome-terminal": "gnome-terminal --working-directory={{dir}} -- {{cmd}}",
    "gnome-terminal-server": "gnome-terminal --working-directory={{dir}} -- {{cmd}}",
    "konsole": "konsole --workdir {{dir}} -e {{cmd}}",
}


BUILTIN_AGENTS: dict[str, dict[str, Any]] = {
    "claude": {
        "command": "claude",
        "args": ["--dangerously-skip-permissions"],
        "description": "Claude Code CLI agent",
        "spawn_mode": "window",
        "prompt_as_arg": True,
        "idle_pattern": "❯",
        "response_fence": True,
        "output_mode": "fence",
        "models": ["sonnet", "haiku", "opus"],
    },
    "codex": {
        "command": "codex",
        "args": [
            "--full-auto",
            "--no-alt-screen",
            "-c",
            "notice.model_migrations={}",
            "-c",
            "notice.hide_rate_limit_switch_prompt=true",
        ],
        "description": "OpenAI Codex CLI agent",
        "spawn_mode": "window",
        "prompt_as_arg": True,
        "idle_pattern": "›",
        "response_fence": True,
        "output_mode": "fence",
        "models": [
            "gpt-5.2-codex",
            "gpt-5.3-codex",
            "gpt-5.1-codex-max",
            "gpt-5.2",
            "gpt-5.1-codex-mini",
        ],
    },
    "gemini": {
        "command": "gemini",
        "description": "Google Gemini CLI",
        "spawn_mode": "window",
        "prompt_as_arg": True,
        "idle_pattern": ">",
        "response_fence": True,
        "output_mode": "fence",
    },
    "cursor-agent": {
        "command": "cursor-agent",
        "description": "Cursor AI agent CLI",
        "spawn_mode": "window",
        "prompt_as_arg": True,
        "idle_pattern": "→",
        "response_fence": True,
        "output_mode": "fence",
    },
    "cecli": {
        "command": "cecli",
        "args": [
            "--no-tui",
            "--yes-always",
            "--no-auto-commits",
            "--no-check-update",
            "--no-show-model-warnings",
        ],
        "description": "Cecli (aider fork) coding agent",
        "spawn_mode": "window",
        "pipe_task": True,
        "response_fence": True,
        "output_mode": "fence",
        "models": [
            "anthropic/claude-sonnet-4-5",
            "anthropic/claude-opus-4-6",
            "openai/gpt-5.2",
            "deepseek/deepseek-chat",
        ],
        "default_model": "anthropic/claude-sonnet-4-5",
    },
    "pi": {
        "command": "pi",
        "args": ["--no-session"],
        "description": "Pi coding agent (multi-provider)",
        "spawn_mode": "window",
        "prompt_as_arg": True,
        "idle_pattern": "─",
        "response_fence": True,
        "output_mode": "fence",
        "models": [
            "gemini-3-pro-high",
            "gemini-3-flash",
            "claude-sonnet-4-5",
            "claude-opus-4-6",
            "claude-haiku-4-5",
        ],
        "default_model": "gemini-3-pro-high",
    },
}


def default_config() -> TermtileConfig:
    """Return the configuration used when no file overrides it."""

    return TermtileConfig.model_validate(
        {
            "agents": BUILTIN_AGENTS,
            "terminal_spawn_commands": BUILTIN_TERMINAL_SPAWN_COMMANDS,
        }
    )


class ConfigLoader:
    """Loads the termtile configuration from a YAML file on disk.

    Agents and terminal templates from the file are layered over the built-in
    defaults, key by key.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path is not None else None

    @property
    def path(self) -> Path | None:
        return self._path

    def load(self) -> TermtileConfig:
        document: dict[str, Any] = {}
        if self._path is not None and self._path.exists():
            try:
                loaded = yaml.safe_load(self._path.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                raise ConfigLoadError(f"Failed to parse YAML in {self._path}: {exc}") from exc
            if loaded is not None:
                if not isinstance(loaded, dict):
                    raise ConfigLoadError(f"Configuration in {self._path} must be a mapping")
                document = loaded

        agents: dict[str, Any] = dict(BUILTIN_AGENTS)
        agents.update(document.get("agents") or {})
        templates = dict(BUILTIN_TERMINAL_SPAWN_COMMANDS)
        templates.update(document.get("terminal_spawn_commands") or {})

        merged = {
            "agents": agents,
            "agent_mode": document.get("agent_mode") or {},
            "terminal_spawn_commands": templates,
            "preferred_terminal": document.get("preferred_terminal") or "",
        }
        try:
            return TermtileConfig.model_validate(merged)
        except ValidationError as exc:
            raise ConfigLoadError(f"Configuration validation error in {self._path}: {exc}") from exc


__all__ = [
    "BUILTIN_AGENTS",
    "BUILTIN_TERMINAL_SPAWN_COMMANDS",
    "ConfigLoadError",
    "ConfigLoader",
    "default_config",
]
