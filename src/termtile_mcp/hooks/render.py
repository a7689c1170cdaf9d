"""Render native hook settings from an agent's declarative templates."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from ..agents import AgentConfig, AgentHooks

logger = logging.getLogger(__name__)

DEFAULT_HOOK_COMMAND = "termtile-hook"
EVENTS_SENTINEL = "{{events}}"
CONTEXT_PLACEHOLDER = "{{context}}"

_ABSTRACT_HOOKS = ("on_start", "on_check", "on_end")
_DEFAULT_SUBCOMMANDS = {"on_start": "start", "on_check": "check", "on_end": "emit"}


def resolve_hooks(agent: AgentConfig, hook_command: str = DEFAULT_HOOK_COMMAND) -> AgentHooks:
    """Return the agent's hooks, filling blanks with the hook CLI when output mode is ``hooks``."""

    hooks = agent.hooks.model_copy()
    if agent.output_mode != "hooks":
        return hooks
    for name in _ABSTRACT_HOOKS:
        if not getattr(hooks, name):
            setattr(hooks, name, f"{hook_command} {_DEFAULT_SUBCOMMANDS[name]} --auto")
    return hooks


def substitute(value: Any, replacements: Mapping[str, str]) -> Any:
    """Deep-copy ``value`` replacing every placeholder occurrence inside strings."""

    if isinstance(value, dict):
        return {key: substitute(item, replacements) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute(item, replacements) for item in value]
    if isinstance(value, str):
        for placeholder, replacement in replacements.items():
            value = value.replace(placeholder, replacement)
        return value
    return value


def substitute_events(value: Any, events: dict[str, Any]) -> Any:
    """Deep-copy ``value`` replacing strings equal to ``{{events}}`` with ``events``."""

    if isinstance(value, dict):
        return {key: substitute_events(item, events) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_events(item, events) for item in value]
    if value == EVENTS_SENTINEL:
        return events
    return value


def render_hook_settings(agent: AgentConfig, hooks: AgentHooks) -> str:
    """Return the JSON settings that register ``hooks`` natively, or ``""`` when unsupported."""

    if agent.hook_delivery in ("", "none"):
        return ""
    if agent.hook_events is None or agent.hook_entry is None or agent.hook_wrapper is None:
        return ""

    events: dict[str, Any] = {}
    for name in _ABSTRACT_HOOKS:
        command = getattr(hooks, name)
        native = agent.hook_events.get(name, "")
        if not command or not native:
            continue
        entry = substitute(
            agent.hook_entry,
            {"{{command}}": command, "{{event}}": native, "{{name}}": name},
        )
        events[native] = [entry]

    if not events:
        return ""
    return json.dumps(substitute_events(agent.hook_wrapper, events))


def render_hook_output(template: Any, content: str) -> str:
    """Format hook context through an agent's ``hook_output`` template; plain text without one."""

    if template is None:
        return content
    try:
        return json.dumps(substitute(template, {CONTEXT_PLACEHOLDER: content}))
    except (TypeError, ValueError) as exc:
        logger.warning("Failed to render hook output template", extra={"error": str(exc)})
        return content


def deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Merge ``overlay`` into ``base``; nested mappings merge, anything else is replaced."""

    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


__all__ = [
    "DEFAULT_HOOK_COMMAND",
    "deep_merge",
    "render_hook_output",
    "render_hook_settings",
    "resolve_hooks",
    "substitute",
    "substitute_events",
]
