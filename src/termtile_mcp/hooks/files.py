"""Inject hook settings into project files and put the originals back."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Container

from ..agents import AgentConfig
from ..artifacts import HOOK_BACKUP_FILE, HOOK_STATE_FILE, ArtifactDirectory
from ..errors import HookInjectionError
from ..tmux.utils import session_name
from .render import deep_merge

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HookFileState:
    """Where an injected settings file lives and how to undo the injection."""

    original_path: str
    backup_path: str
    had_original: bool


def inject_project_file_hooks(
    directory: ArtifactDirectory,
    workspace: str,
    slot: int,
    cwd: str | Path,
    agent: AgentConfig,
    settings: str,
) -> HookFileState:
    """Merge rendered ``settings`` into the agent's project settings file.

    An existing file is backed up into the slot's artifact directory and a
    ``hook_state.json`` is written so the change can be reverted after a crash.
    """

    settings_dir = agent.hook_settings_dir.strip()
    settings_file = agent.hook_settings_file.strip()
    if not settings_dir or not settings_file:
        raise HookInjectionError(
            "hook_settings_dir and hook_settings_file must be set for project_file delivery"
        )

    target_dir = Path(cwd) / settings_dir
    target = target_dir / settings_file
    artifact_dir = directory.ensure(workspace, slot)
    backup = artifact_dir / HOOK_BACKUP_FILE

    try:
        existing = target.read_bytes()
        had_original = True
    except FileNotFoundError:
        existing = b""
        had_original = False
    except OSError as exc:
        raise HookInjectionError(f"failed to read existing settings file {str(target)!r}: {exc}") from exc

    try:
        overlay = json.loads(settings)
    except json.JSONDecodeError as exc:
        raise HookInjectionError(f"failed to parse rendered hook settings: {exc}") from exc
    if not isinstance(overlay, dict):
        raise HookInjectionError("rendered hook settings must be a JSON object")

    merged: dict[str, Any] = overlay
    if had_original:
        try:
            backup.write_bytes(existing)
        except OSError as exc:
            raise HookInjectionError(f"failed to back up settings file {str(target)!r}: {exc}") from exc
        if existing:
            try:
                current = json.loads(existing)
            except json.JSONDecodeError:
                current = None
            if isinstance(current, dict):
                merged = deep_merge(current, overlay)

    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(merged, indent=2), encoding="utf-8")
    except OSError as exc:
        raise HookInjectionError(f"failed to write merged settings file {str(target)!r}: {exc}") from exc

    state = HookFileState(original_path=str(target), backup_path=str(backup), had_original=had_original)
    try:
        (artifact_dir / HOOK_STATE_FILE).write_text(json.dumps(asdict(state)), encoding="utf-8")
    except OSError as exc:
        raise HookInjectionError(f"failed to write hook state file: {exc}") from exc
    logger.info(
        "Injected project hook settings",
        extra={"workspace": workspace, "slot": slot, "path": str(target), "had_original": had_original},
    )
    return state


def restore_project_file_hooks(directory: ArtifactDirectory, workspace: str, slot: int) -> bool:
    """Undo an injection recorded for the slot; returns ``False`` when there was none."""

    state_path = directory.file(workspace, slot, HOOK_STATE_FILE)
    try:
        raw = state_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise HookInjectionError(f"failed to read hook state file: {exc}") from exc

    try:
        state = HookFileState(**json.loads(raw))
    except (json.JSONDecodeError, TypeError) as exc:
        raise HookInjectionError(f"failed to parse hook state file: {exc}") from exc

    original = Path(state.original_path)
    backup = Path(state.backup_path)
    if state.had_original:
        try:
            original.write_bytes(backup.read_bytes())
        except OSError as exc:
            raise HookInjectionError(f"failed to restore settings file {state.original_path!r}: {exc}") from exc
    else:
        try:
            original.unlink(missing_ok=True)
        except OSError as exc:
            raise HookInjectionError(
                f"failed to remove injected settings file {state.original_path!r}: {exc}"
            ) from exc
        try:
            original.parent.rmdir()
        except OSError:
            pass

    state_path.unlink(missing_ok=True)
    backup.unlink(missing_ok=True)
    return True


def reconcile_hook_file_state(directory: ArtifactDirectory, live_sessions: Container[str]) -> list[tuple[str, int]]:
    """Restore injections whose agent session no longer exists; returns the restored slots."""

    restored: list[tuple[str, int]] = []
    for workspace, slot, slot_dir in directory.iter_slots():
        if not (slot_dir / HOOK_STATE_FILE).exists():
            continue
        name = session_name(workspace, slot)
        if name in live_sessions:
            continue
        logger.info(
            "Restoring hook file state for dead session",
            extra={"workspace": workspace, "slot": slot, "session": name},
        )
        try:
            restore_project_file_hooks(directory, workspace, slot)
        except HookInjectionError as exc:
            logger.warning(
                "Failed to restore hook file state",
                extra={"workspace": workspace, "slot": slot, "error": str(exc)},
            )
            continue
        restored.append((workspace, slot))
    return restored


def file_write_instructions(directory: ArtifactDirectory, workspace: str, slot: int) -> str:
    """Task suffix asking an agent without native hooks to write ``output.json`` itself."""

    path = directory.output_path(workspace, slot)
    return (
        f"\n\nIMPORTANT: when you are completely finished, write your final summary as a JSON file to: {path}\n"
        'The file MUST contain exactly: {"status":"complete","output":"YOUR_SUMMARY_HERE"}\n'
        "Escape any quotes or newlines in your summary. This file signals completion to the orchestrator."
    )


__all__ = [
    "HookFileState",
    "file_write_instructions",
    "inject_project_file_hooks",
    "reconcile_hook_file_state",
    "restore_project_file_hooks",
]
