"""Workspace registry access and workspace resolution for tool calls."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

import yaml

from .config import DEFAULT_WORKSPACE
from .errors import TermtileError, WorkspaceResolutionError

logger = logging.getLogger(__name__)

PROJECT_DIR = ".termtile"
PROJECT_FILE = "workspace.yaml"
LOCAL_PROJECT_FILE = "local.yaml"
DEFAULT_ROOT_MARKER = ".git"


class WorkspaceRegistryError(TermtileError):
    """Raised when the workspace registry cannot be read or updated."""


@dataclass(slots=True)
class WorkspaceInfo:
    """A workspace loaded on a desktop, as recorded by the tiling daemon."""

    name: str
    desktop: int
    terminal_count: int = 0
    agent_mode: bool = False
    agent_slots: list[int] = field(default_factory=list)
    cwd: str | None = None
    terminal_class: str | None = None


class WorkspaceRegistry(Protocol):
    def get(self, name: str) -> WorkspaceInfo | None: ...

    def list(self) -> list[WorkspaceInfo]: ...

    def add_terminal(self, desktop: int) -> int: ...

    def remove_terminal(self, desktop: int, slot: int) -> None: ...

    def move_terminal(self, src_desktop: int, slot: int, dst_desktop: int) -> int: ...

    def has_session(self, session_name: str) -> bool: ...


class Desktop(Protocol):
    """Window-manager operations used when agents run in their own windows."""

    def retile(self) -> None: ...

    def current_desktop(self) -> int | None: ...

    def active_window(self) -> int | None: ...

    def focus_window(self, window_id: int) -> None: ...

    def find_window(self, title: str) -> int | None: ...

    def move_window_to_desktop(self, window_id: int, desktop: int) -> None: ...


class NullDesktop:
    """Desktop backend used when no window manager integration is configured."""

    def retile(self) -> None:
        logger.debug("No desktop backend configured; skipping re-tile")

    def current_desktop(self) -> int | None:
        return None

    def active_window(self) -> int | None:
        return None

    def focus_window(self, window_id: int) -> None:
        return None

    def find_window(self, title: str) -> int | None:
        return None

    def move_window_to_desktop(self, window_id: int, desktop: int) -> None:
        return None


def best_effort(action: str, fn: Callable[..., Any], *args: Any) -> Any:
    """Run a desktop call, logging and discarding any failure."""

    try:
        return fn(*args)
    except Exception as exc:  # desktop backends raise their own error types
        logger.warning("Desktop action failed", extra={"action": action, "error": str(exc)})
        return None


class JsonWorkspaceRegistry:
    """Reads and updates the registry file shared with the tiling daemon.

    The file maps desktops to workspaces and window ids to slot records::

        {"workspaces": {"0": {"name": "...", "agent_mode": true, ...}},
         "slots": {"12345": {"session_name": "termtile-ws-0", ...}}}
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {"workspaces": {}, "slots": {}}
        except OSError as exc:
            raise WorkspaceRegistryError(f"failed to read workspace registry {self._path}: {exc}") from exc
        if not raw.strip():
            return {"workspaces": {}, "slots": {}}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise WorkspaceRegistryError(f"failed to parse workspace registry {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise WorkspaceRegistryError(f"workspace registry {self._path} must be a JSON object")
        data.setdefault("workspaces", {})
        data.setdefault("slots", {})
        return data

    def _save(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._path)

    @staticmethod
    def _to_info(desktop: str, entry: dict[str, Any]) -> WorkspaceInfo:
        return WorkspaceInfo(
            name=str(entry.get("name") or "").strip(),
            desktop=int(entry.get("desktop", desktop)),
            terminal_count=int(entry.get("terminal_count") or 0),
            agent_mode=bool(entry.get("agent_mode")),
            agent_slots=sorted(int(slot) for slot in entry.get("agent_slots") or []),
            cwd=entry.get("cwd") or None,
            terminal_class=entry.get("terminal_class") or None,
        )

    def list(self) -> list[WorkspaceInfo]:
        with self._lock:
            data = self._load()
        infos = [self._to_info(desktop, entry) for desktop, entry in data["workspaces"].items()]
        return sorted(infos, key=lambda info: info.desktop)

    def get(self, name: str) -> WorkspaceInfo | None:
        name = name.strip()
        for info in self.list():
            if info.name == name:
                return info
        return None

    def _workspace_entry(self, data: dict[str, Any], desktop: int) -> dict[str, Any]:
        entry = data["workspaces"].get(str(desktop))
        if entry is None:
            raise WorkspaceRegistryError(f"no workspace on desktop {desktop}")
        return entry

    def add_terminal(self, desktop: int) -> int:
        """Append an agent terminal to the workspace on ``desktop``; returns its slot."""

        with self._lock:
            data = self._load()
            entry = self._workspace_entry(data, desktop)
            slot = int(entry.get("terminal_count") or 0)
            entry["terminal_count"] = slot + 1
            entry["agent_slots"] = sorted([*(entry.get("agent_slots") or []), slot])
            self._save(data)
        return slot

    @staticmethod
    def _remove_slot(entry: dict[str, Any], slot: int) -> None:
        count = int(entry.get("terminal_count") or 0)
        if slot < 0 or slot >= count:
            raise WorkspaceRegistryError(f"slot {slot} out of range (workspace has {count} terminals)")
        entry["terminal_count"] = count - 1
        remaining = []
        for existing in entry.get("agent_slots") or []:
            if existing < slot:
                remaining.append(existing)
            elif existing > slot:
                remaining.append(existing - 1)
        entry["agent_slots"] = remaining

    def remove_terminal(self, desktop: int, slot: int) -> None:
        """Drop ``slot`` from the workspace, shifting higher agent slots down."""

        with self._lock:
            data = self._load()
            self._remove_slot(self._workspace_entry(data, desktop), slot)
            self._save(data)

    def move_terminal(self, src_desktop: int, slot: int, dst_desktop: int) -> int:
        """Move a terminal between workspaces; returns its slot in the destination."""

        with self._lock:
            data = self._load()
            src = self._workspace_entry(data, src_desktop)
            dst = self._workspace_entry(data, dst_desktop)
            self._remove_slot(src, slot)
            new_slot = int(dst.get("terminal_count") or 0)
            dst["terminal_count"] = new_slot + 1
            dst["agent_slots"] = sorted([*(dst.get("agent_slots") or []), new_slot])
            self._save(data)
        return new_slot

    def has_session(self, session_name: str) -> bool:
        try:
            with self._lock:
                data = self._load()
        except WorkspaceRegistryError:
            return False
        return any(
            isinstance(record, dict) and record.get("session_name") == session_name
            for record in data["slots"].values()
        )


@dataclass(slots=True)
class ProjectBinding:
    workspace: str
    root: Path
    source_path: Path


def _read_project_file(path: Path) -> dict[str, Any] | None:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise WorkspaceResolutionError(f"failed to read project workspace file {str(path)!r}: {exc}") from exc
    try:
        loaded = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise WorkspaceResolutionError(f"failed to parse project workspace file {str(path)!r}: {exc}") from exc
    return loaded if isinstance(loaded, dict) else {}


def _binding_fields(document: dict[str, Any] | None) -> tuple[str, str]:
    if not document:
        return "", ""
    project = document.get("project") or {}
    marker = project.get("root_marker") if isinstance(project, dict) else ""
    return str(document.get("workspace") or "").strip(), str(marker or "").strip()


def find_project_binding(start: Path) -> ProjectBinding | None:
    """Walk up from ``start`` looking for ``.termtile/local.yaml`` or ``.termtile/workspace.yaml``.

    The local file wins. The binding's ``project.root_marker`` (``.git`` by
    default) must exist next to the ``.termtile`` directory.
    """

    directory = Path(start).resolve()
    for candidate in (directory, *directory.parents):
        project_path = candidate / PROJECT_DIR / PROJECT_FILE
        local_path = candidate / PROJECT_DIR / LOCAL_PROJECT_FILE
        project_doc = _read_project_file(project_path)
        local_doc = _read_project_file(local_path)
        if project_doc is None and local_doc is None:
            continue

        local_ws, local_marker = _binding_fields(local_doc)
        project_ws, project_marker = _binding_fields(project_doc)
        workspace, source = (local_ws, local_path) if local_ws else (project_ws, project_path)
        if not workspace:
            continue
        marker = local_marker or project_marker or DEFAULT_ROOT_MARKER

        marker_path = Path(marker) if os.path.isabs(marker) else candidate / marker
        if not marker_path.exists():
            raise WorkspaceResolutionError(
                f"project workspace config {str(source)!r} references missing project.root_marker "
                f"{marker!r}; pass workspace explicitly or fix project config"
            )
        return ProjectBinding(workspace=workspace, root=candidate, source_path=source)
    return None


class WorkspaceResolver:
    """Picks the workspace a tool call applies to.

    Precedence: explicit argument, then the ``source_workspace`` hint, then the
    project marker, then the single registered agent-mode workspace.
    """

    def __init__(
        self,
        registry: WorkspaceRegistry,
        *,
        cwd: Callable[[], Path] = Path.cwd,
    ) -> None:
        self._registry = registry
        self._cwd = cwd

    def registered_agent_workspaces(self) -> list[str]:
        try:
            infos = self._registry.list()
        except WorkspaceRegistryError as exc:
            raise WorkspaceResolutionError(str(exc)) from exc
        return sorted({info.name for info in infos if info.name and info.agent_mode})

    def is_agent_mode(self, name: str) -> bool:
        try:
            info = self._registry.get(name)
        except WorkspaceRegistryError:
            info = None
        if info is None:
            return name == DEFAULT_WORKSPACE
        return info.agent_mode

    def project_binding(self) -> ProjectBinding | None:
        return find_project_binding(self._cwd())

    def project_root(self) -> Path | None:
        try:
            binding = self.project_binding()
        except WorkspaceResolutionError:
            return None
        return binding.root if binding is not None else None

    def _validate(self, name: str, require_registered: bool, source: str) -> str:
        workspace = name.strip()
        if not workspace:
            raise WorkspaceResolutionError(f"{source} is empty")
        if not require_registered:
            return workspace
        if workspace == DEFAULT_WORKSPACE:
            candidates = self.registered_agent_workspaces()
            if candidates:
                raise WorkspaceResolutionError(
                    f"{source} {workspace!r} is a legacy default and is not registered; use an explicit "
                    f"registered workspace ({', '.join(candidates)}) or provide source_workspace"
                )
            return workspace
        if self._registry.get(workspace) is None:
            raise WorkspaceResolutionError(
                f"{source} {workspace!r} not found in registry; pass a valid workspace name or create/load one first"
            )
        return workspace

    def resolve(
        self,
        workspace: str | None,
        source_workspace: str | None,
        tool: str,
        *,
        require_registered: bool = False,
    ) -> str:
        explicit = (workspace or "").strip()
        if explicit:
            return self._validate(explicit, require_registered, "workspace")
        hint = (source_workspace or "").strip()
        if hint:
            return self._validate(hint, require_registered, "source_workspace")

        try:
            binding = self.project_binding()
        except WorkspaceResolutionError as exc:
            raise WorkspaceResolutionError(f"failed to resolve workspace for {tool}: {exc}") from exc
        if binding is not None:
            try:
                return self._validate(binding.workspace, require_registered, "project workspace")
            except WorkspaceResolutionError as exc:
                raise WorkspaceResolutionError(
                    f"failed to resolve workspace for {tool}: {exc} (project config: {binding.source_path})"
                ) from exc

        candidates = self.registered_agent_workspaces()
        if len(candidates) == 1:
            return self._validate(candidates[0], require_registered, "registered workspace")
        if not candidates:
            raise WorkspaceResolutionError(
                f"unable to resolve workspace for {tool}: pass workspace explicitly or provide "
                "source_workspace (or set .termtile/workspace.yaml)"
            )
        raise WorkspaceResolutionError(
            f"ambiguous workspace for {tool}: multiple registered agent-mode workspaces found "
            f"({', '.join(candidates)}); pass workspace explicitly or provide source_workspace"
        )

    def for_spawn(self, workspace: str | None, source_workspace: str | None) -> str:
        return self.resolve(workspace, source_workspace, "spawn_agent", require_registered=True)

    def for_read(self, workspace: str | None, source_workspace: str | None, tool: str) -> str:
        return self.resolve(workspace, source_workspace, tool)


__all__ = [
    "Desktop",
    "JsonWorkspaceRegistry",
    "NullDesktop",
    "ProjectBinding",
    "WorkspaceInfo",
    "WorkspaceRegistry",
    "WorkspaceRegistryError",
    "WorkspaceResolver",
    "best_effort",
    "find_project_binding",
]
