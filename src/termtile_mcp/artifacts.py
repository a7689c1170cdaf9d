"""Captured agent output, in memory and on disk."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from .config import DEFAULT_ARTIFACT_CAP_BYTES, DEFAULT_WORKSPACE, MIN_ARTIFACT_CAP_BYTES

logger = logging.getLogger(__name__)

OUTPUT_FILE = "output.json"
AGENT_META_FILE = "agent_meta.json"
CONTEXT_FILE = "context.md"
CHECKPOINT_FILE = "checkpoint.json"
HOOK_BACKUP_FILE = "hook_backup.json"
HOOK_STATE_FILE = "hook_state.json"

SLOT_OUTPUT_TEMPLATE = re.compile(r"\{\{\s*slot_(\d+)\.output\s*\}\}")


def normalize_workspace(workspace: str | None) -> str:
    return (workspace or "").strip() or DEFAULT_WORKSPACE


@dataclass(slots=True)
class Artifact:
    """Snapshot of an agent's captured output."""

    workspace: str
    slot: int
    output: str
    truncated: bool
    warning: str | None
    original_bytes: int
    stored_bytes: int
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace": self.workspace,
            "slot": self.slot,
            "output": self.output,
            "truncated": self.truncated,
            "warning": self.warning,
            "original_bytes": self.original_bytes,
            "stored_bytes": self.stored_bytes,
            "last_updated": self.updated_at.isoformat(),
        }


def truncate_to_cap(text: str, cap: int) -> tuple[str, str | None, int]:
    """Fit ``text`` into ``cap`` UTF-8 bytes.

    Returns ``(stored, warning, original_bytes)``. Oversized input keeps a prefix
    that never splits a character, followed by a ``[truncated from N bytes to M
    bytes]`` notice where ``M`` is the stored size.
    """

    data = text.encode("utf-8")
    original = len(data)
    if original <= cap:
        return text, None, original

    def notice(stored: int) -> str:
        return f"truncated from {original} bytes to {stored} bytes"

    suffix_len = len(f"\n\n[{notice(cap)}]".encode("utf-8"))
    if suffix_len > cap:
        raise ValueError(f"artifact cap of {cap} bytes cannot hold the truncation notice")
    prefix = data[: max(cap - suffix_len, 0)].decode("utf-8", errors="ignore")
    prefix_len = len(prefix.encode("utf-8"))

    stored_size = prefix_len + suffix_len
    for digits in range(len(str(cap)), 0, -1):
        candidate = prefix_len + suffix_len - (len(str(cap)) - digits)
        if len(str(candidate)) == digits:
            stored_size = candidate
            break

    warning = notice(stored_size)
    return f"{prefix}\n\n[{warning}]", warning, original


class ArtifactStore:
    """Thread-safe map of ``(workspace, slot)`` to the latest captured output."""

    def __init__(
        self,
        cap_bytes: int = DEFAULT_ARTIFACT_CAP_BYTES,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if cap_bytes < MIN_ARTIFACT_CAP_BYTES:
            raise ValueError(f"artifact cap must be at least {MIN_ARTIFACT_CAP_BYTES} bytes, got {cap_bytes}")
        self._cap = cap_bytes
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._items: dict[tuple[str, int], Artifact] = {}

    @property
    def cap_bytes(self) -> int:
        return self._cap

    def set(self, workspace: str, slot: int, output: str) -> Artifact:
        workspace = normalize_workspace(workspace)
        stored, warning, original = truncate_to_cap(output, self._cap)
        artifact = Artifact(
            workspace=workspace,
            slot=slot,
            output=stored,
            truncated=warning is not None,
            warning=warning,
            original_bytes=original,
            stored_bytes=len(stored.encode("utf-8")),
            updated_at=self._clock(),
        )
        with self._lock:
            self._items[(workspace, slot)] = artifact
        return artifact

    def get(self, workspace: str, slot: int) -> Artifact | None:
        with self._lock:
            return self._items.get((normalize_workspace(workspace), slot))

    def clear(self, workspace: str, slot: int) -> None:
        with self._lock:
            self._items.pop((normalize_workspace(workspace), slot), None)

    def move(self, src_workspace: str, src_slot: int, dst_workspace: str, dst_slot: int) -> None:
        src = (normalize_workspace(src_workspace), src_slot)
        dst = (normalize_workspace(dst_workspace), dst_slot)
        with self._lock:
            artifact = self._items.pop(src, None)
            if artifact is None:
                self._items.pop(dst, None)
                return
            artifact.workspace, artifact.slot = dst
            self._items[dst] = artifact

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass(slots=True)
class HookOutput:
    """Result of reading a slot's ``output.json`` completion file."""

    output: str
    ready: bool
    reason: str | None = None
    modified_at: datetime | None = None


class ArtifactDirectory:
    """Per-slot files under ``{root}/{workspace}/{slot}/``."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def path(self, workspace: str, slot: int) -> Path:
        if slot < 0:
            raise ValueError(f"invalid slot {slot}")
        return self._root / normalize_workspace(workspace) / str(slot)

    def ensure(self, workspace: str, slot: int) -> Path:
        directory = self.path(workspace, slot)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def file(self, workspace: str, slot: int, name: str) -> Path:
        return self.path(workspace, slot) / name

    def output_path(self, workspace: str, slot: int) -> Path:
        return self.file(workspace, slot, OUTPUT_FILE)

    def write_output(
        self,
        workspace: str,
        slot: int,
        output: str,
        *,
        timestamp: datetime | None = None,
    ) -> Path:
        """Write a complete ``output.json`` atomically through a temporary file."""

        directory = self.ensure(workspace, slot)
        payload = {
            "status": "complete",
            "output": output,
            "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
        }
        path = directory / OUTPUT_FILE
        tmp_path = directory / f"{OUTPUT_FILE}.tmp"
        tmp_path.write_text(json.dumps(payload) + "\n", encoding="utf-8")
        try:
            os.replace(tmp_path, path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        return path

    def read_output(self, workspace: str, slot: int) -> HookOutput:
        """Read ``output.json``; ``ready`` is set only for complete, non-empty output."""

        path = self.output_path(workspace, slot)
        label = f"workspace {normalize_workspace(workspace)!r} slot {slot}"
        try:
            raw = path.read_text(encoding="utf-8")
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except FileNotFoundError:
            return HookOutput("", False, f"hook artifact not found for {label}")
        if not raw.strip():
            return HookOutput("", False, f"hook artifact is empty for {label}", modified)
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return HookOutput("", False, f"hook artifact is invalid JSON for {label}", modified)
        if not isinstance(payload, dict):
            return HookOutput("", False, f"hook artifact is invalid JSON for {label}", modified)

        status = str(payload.get("status") or "").strip().lower()
        if status and status != "complete":
            return HookOutput("", False, f"hook artifact status {status!r} for {label}", modified)
        output = payload.get("output")
        if not isinstance(output, str) or not output.strip():
            return HookOutput("", False, f"hook artifact output is empty for {label}", modified)
        return HookOutput(output, True, None, modified)

    def clean_stale_output(self, workspace: str, slot: int) -> None:
        """Remove ``output.json`` only; queued context and checkpoints stay."""

        self.output_path(workspace, slot).unlink(missing_ok=True)

    def cleanup(self, workspace: str, slot: int) -> None:
        shutil.rmtree(self.path(workspace, slot), ignore_errors=True)

    def move(self, src_workspace: str, src_slot: int, dst_workspace: str, dst_slot: int) -> bool:
        """Relocate a slot directory, replacing whatever is at the destination."""

        src = self.path(src_workspace, src_slot)
        if not src.exists():
            return False
        dst = self.path(dst_workspace, dst_slot)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.rmtree(dst, ignore_errors=True)
        try:
            src.rename(dst)
        except OSError:
            shutil.copytree(src, dst)
            shutil.rmtree(src)
        return True

    def write_agent_meta(self, workspace: str, slot: int, agent_type: str) -> None:
        directory = self.ensure(workspace, slot)
        (directory / AGENT_META_FILE).write_text(
            json.dumps({"agent_type": agent_type}) + "\n", encoding="utf-8"
        )

    def read_agent_meta(self, workspace: str, slot: int) -> str | None:
        try:
            data = json.loads(self.file(workspace, slot, AGENT_META_FILE).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        agent_type = data.get("agent_type") if isinstance(data, dict) else None
        return agent_type or None

    def write_context(self, workspace: str, slot: int, text: str) -> Path:
        path = self.ensure(workspace, slot) / CONTEXT_FILE
        path.write_text(text, encoding="utf-8")
        return path

    def write_checkpoint(self, workspace: str, slot: int, payload: Any) -> Path:
        path = self.ensure(workspace, slot) / CHECKPOINT_FILE
        body = payload if isinstance(payload, str) else json.dumps(payload, indent=2)
        path.write_text(body, encoding="utf-8")
        return path

    def iter_slots(self) -> Iterator[tuple[str, int, Path]]:
        """Yield ``(workspace, slot, directory)`` for every slot directory on disk."""

        if not self._root.is_dir():
            return
        for workspace_dir in sorted(self._root.iterdir()):
            if not workspace_dir.is_dir():
                continue
            for slot_dir in sorted(workspace_dir.iterdir()):
                if slot_dir.is_dir() and slot_dir.name.isdigit():
                    yield workspace_dir.name, int(slot_dir.name), slot_dir


def substitute_slot_output_templates(
    task: str,
    workspace: str,
    depends_on: Iterable[int],
    *,
    store: ArtifactStore | None = None,
    directory: ArtifactDirectory | None = None,
) -> tuple[str, list[int]]:
    """Replace ``{{slot_N.output}}`` for dependency slots with their captured output.

    Placeholders for slots outside ``depends_on`` are left alone. Returns the new
    text and the sorted dependency slots that had no output to substitute.
    """

    dependencies = set(depends_on)
    if not task.strip() or not dependencies:
        return task, []

    missing: set[int] = set()

    def lookup(slot: int) -> str | None:
        if store is not None:
            artifact = store.get(workspace, slot)
            if artifact is not None:
                return artifact.output
        if directory is not None:
            hook = directory.read_output(workspace, slot)
            if hook.ready:
                return hook.output
        return None

    def replace(match: re.Match[str]) -> str:
        slot = int(match.group(1))
        if slot not in dependencies:
            return match.group(0)
        output = lookup(slot)
        if output is None:
            missing.add(slot)
            return match.group(0)
        return output

    return SLOT_OUTPUT_TEMPLATE.sub(replace, task), sorted(missing)


__all__ = [
    "AGENT_META_FILE",
    "Artifact",
    "ArtifactDirectory",
    "ArtifactStore",
    "CHECKPOINT_FILE",
    "CONTEXT_FILE",
    "HOOK_BACKUP_FILE",
    "HOOK_STATE_FILE",
    "HookOutput",
    "OUTPUT_FILE",
    "normalize_workspace",
    "substitute_slot_output_templates",
    "truncate_to_cap",
]
