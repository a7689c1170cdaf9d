"""Native hook settings, project-file injection and the hook CLI."""

from .files import (
    HookFileState,
    file_write_instructions,
    inject_project_file_hooks,
    reconcile_hook_file_state,
    restore_project_file_hooks,
)
from .render import deep_merge, render_hook_output, render_hook_settings, resolve_hooks

__all__ = [
    "HookFileState",
    "deep_merge",
    "file_write_instructions",
    "inject_project_file_hooks",
    "reconcile_hook_file_state",
    "render_hook_output",
    "render_hook_settings",
    "restore_project_file_hooks",
    "resolve_hooks",
]
