"""In-memory registry of tracked agent slots."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Literal

from .config import DEFAULT_WORKSPACE
from .errors import SlotOccupiedError

if TYPE_CHECKING:
    from .artifacts import ArtifactStore

SpawnMode = Literal["pane", "window"]


@dataclass(slots=True)
class TrackedAgent:
    """State kept for one agent occupying a workspace slot."""

    agent_type: str
    target: str
    spawn_mode: str = "pane"
    response_fence: bool = False
    baseline_close_count: int = 0
    last_artifact_close_count: int = 0
    pipe_path: str | None = None
    last_pipe_size: int = 0


def _normalize(workspace: str) -> str:
    return workspace.strip() or DEFAULT_WORKSPACE


class SlotRegistry:
    """Tracks agents per workspace along with their last-read snapshots.

    Every public method takes the lock for a short critical section and returns
    copies, so callers can run tmux commands without holding it.
    """

    def __init__(self, artifacts: "ArtifactStore | None" = None) -> None:
        self._lock = threading.Lock()
        self._tracked: dict[str, dict[int, TrackedAgent]] = {}
        self._snapshots: dict[tuple[str, int], str] = {}
        self._artifacts = artifacts

    def _next_free_slot_locked(self, workspace: str) -> int:
        used = self._tracked.get(workspace, {})
        slot = 0
        while slot in used:
            slot += 1
        return slot

    def peek_next_slot(self, workspace: str) -> int:
        with self._lock:
            return self._next_free_slot_locked(_normalize(workspace))

    def allocate(
        self,
        workspace: str,
        agent_type: str,
        target: str,
        spawn_mode: str = "pane",
        *,
        response_fence: bool = False,
    ) -> int:
        """Track a new agent at the lowest free slot and return that slot."""

        workspace = _normalize(workspace)
        with self._lock:
            slot = self._next_free_slot_locked(workspace)
            self._tracked.setdefault(workspace, {})[slot] = TrackedAgent(
                agent_type=agent_type,
                target=target,
                spawn_mode=spawn_mode,
                response_fence=response_fence,
            )
            return slot

    def track_at(
        self,
        workspace: str,
        slot: int,
        agent_type: str,
        target: str,
        spawn_mode: str = "pane",
        *,
        response_fence: bool = False,
    ) -> None:
        """Track an agent at a slot assigned elsewhere; fails when the slot is taken."""

        if slot < 0:
            raise ValueError(f"slot must be non-negative, got {slot}")
        workspace = _normalize(workspace)
        with self._lock:
            slots = self._tracked.setdefault(workspace, {})
            if slot in slots:
                raise SlotOccupiedError(f"slot {slot} already tracked in workspace {workspace!r}")
            slots[slot] = TrackedAgent(
                agent_type=agent_type,
                target=target,
                spawn_mode=spawn_mode,
                response_fence=response_fence,
            )

    def adopt(self, workspace: str, slot: int, agent: TrackedAgent) -> bool:
        """Track ``agent`` unless the slot is already in use; returns whether it was adopted."""

        workspace = _normalize(workspace)
        with self._lock:
            slots = self._tracked.setdefault(workspace, {})
            if slot in slots:
                return False
            slots[slot] = replace(agent)
            return True

    def get(self, workspace: str, slot: int) -> TrackedAgent | None:
        with self._lock:
            agent = self._tracked.get(_normalize(workspace), {}).get(slot)
            return replace(agent) if agent is not None else None

    def target(self, workspace: str, slot: int) -> str | None:
        agent = self.get(workspace, slot)
        return agent.target if agent is not None else None

    def list(self, workspace: str) -> dict[int, TrackedAgent]:
        with self._lock:
            slots = self._tracked.get(_normalize(workspace), {})
            return {slot: replace(agent) for slot, agent in slots.items()}

    def workspaces(self) -> list[str]:
        with self._lock:
            return sorted(name for name, slots in self._tracked.items() if slots)

    def snapshot_all(self) -> dict[str, dict[int, TrackedAgent]]:
        with self._lock:
            return {
                name: {slot: replace(agent) for slot, agent in slots.items()}
                for name, slots in self._tracked.items()
                if slots
            }

    def _mutate(self, workspace: str, slot: int, **changes: object) -> None:
        with self._lock:
            agent = self._tracked.get(_normalize(workspace), {}).get(slot)
            if agent is None:
                return
            for key, value in changes.items():
                setattr(agent, key, value)

    def update_target(self, workspace: str, slot: int, target: str) -> None:
        self._mutate(workspace, slot, target=target)

    def set_pipe_state(self, workspace: str, slot: int, path: str | None) -> None:
        self._mutate(workspace, slot, pipe_path=path, last_pipe_size=0)

    def update_pipe_size(self, workspace: str, slot: int, size: int) -> None:
        self._mutate(workspace, slot, last_pipe_size=size)

    def update_fence_state(self, workspace: str, slot: int, response_fence: bool, baseline: int) -> None:
        """Record the close-tag baseline at send time and reset the artifact counter to it."""

        self._mutate(
            workspace,
            slot,
            response_fence=response_fence,
            baseline_close_count=baseline,
            last_artifact_close_count=baseline if response_fence else 0,
        )

    def set_last_artifact_count(self, workspace: str, slot: int, count: int) -> None:
        self._mutate(workspace, slot, last_artifact_close_count=count)

    def remove(self, workspace: str, slot: int) -> TrackedAgent | None:
        """Stop tracking a slot, dropping its artifact and read snapshot."""

        workspace = _normalize(workspace)
        with self._lock:
            agent = self._tracked.get(workspace, {}).pop(slot, None)
            self._snapshots.pop((workspace, slot), None)
        if self._artifacts is not None:
            self._artifacts.clear(workspace, slot)
        return agent

    def relocate(
        self,
        src_workspace: str,
        src_slot: int,
        dst_workspace: str,
        dst_slot: int,
        *,
        target: str | None = None,
    ) -> TrackedAgent | None:
        """Move a slot's entry, snapshot and artifact to a new position."""

        src_workspace = _normalize(src_workspace)
        dst_workspace = _normalize(dst_workspace)
        with self._lock:
            agent = self._tracked.get(src_workspace, {}).pop(src_slot, None)
            if agent is None:
                return None
            if target is not None:
                agent.target = target
            self._tracked.setdefault(dst_workspace, {})[dst_slot] = agent
            snapshot = self._snapshots.pop((src_workspace, src_slot), None)
            if snapshot is not None:
                self._snapshots[(dst_workspace, dst_slot)] = snapshot
            else:
                self._snapshots.pop((dst_workspace, dst_slot), None)
            moved = replace(agent)
        if self._artifacts is not None:
            self._artifacts.move(src_workspace, src_slot, dst_workspace, dst_slot)
        return moved

    def get_snapshot(self, workspace: str, slot: int) -> str:
        with self._lock:
            return self._snapshots.get((_normalize(workspace), slot), "")

    def set_snapshot(self, workspace: str, slot: int, output: str) -> None:
        with self._lock:
            self._snapshots[(_normalize(workspace), slot)] = output

    def clear_snapshot(self, workspace: str, slot: int) -> None:
        with self._lock:
            self._snapshots.pop((_normalize(workspace), slot), None)


__all__ = ["SlotRegistry", "SpawnMode", "TrackedAgent"]
