"""Error types shared across the termtile MCP package."""

from __future__ import annotations


class TermtileError(RuntimeError):
    """Base class for orchestrator errors."""


class WorkspaceResolutionError(TermtileError):
    """Raised when a tool call cannot be bound to a workspace."""


class SlotOccupiedError(TermtileError):
    """Raised when tracking a slot that is already in use."""


class SpawnError(TermtileError):
    """Raised when an agent terminal cannot be created."""


class HookInjectionError(TermtileError):
    """Raised when project hook settings cannot be written or restored."""


__all__ = [
    "TermtileError",
    "WorkspaceResolutionError",
    "SlotOccupiedError",
    "SpawnError",
    "HookInjectionError",
]
