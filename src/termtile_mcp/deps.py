"""Wait for prerequisite slots before spawning a dependent agent."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable

from .artifacts import ArtifactDirectory, ArtifactStore
from .errors import TermtileError
from .idle import ArtifactCaptureError, IdleDetector
from .registry import SlotRegistry
from .tmux import TmuxRunner

logger = logging.getLogger(__name__)

DEFAULT_DEPENDENCY_TIMEOUT = 300.0
DEFAULT_DEPENDENCY_POLL = 2.0


class DependencyError(TermtileError):
    """Raised when a prerequisite slot can never become idle."""


class DependencyTimeoutError(TermtileError):
    """Raised when prerequisite slots are still busy at the deadline."""

    def __init__(self, slots: list[int], timeout: float) -> None:
        super().__init__(
            f"timeout waiting for dependency slots {slots} to become idle after {timeout:g}s"
        )
        self.slots = slots
        self.timeout = timeout


def normalize_dependencies(slots: Iterable[int]) -> list[int]:
    """Validate and de-duplicate prerequisite slots, keeping first-seen order."""

    unique: list[int] = []
    for slot in slots:
        if slot < 0:
            raise DependencyError(f"depends_on contains negative slot {slot}")
        if slot not in unique:
            unique.append(slot)
    return unique


class DependencyScheduler:
    """Polls prerequisite slots until every one is alive and idle."""

    def __init__(
        self,
        runner: TmuxRunner,
        registry: SlotRegistry,
        idle: IdleDetector,
        *,
        poll_interval: float = DEFAULT_DEPENDENCY_POLL,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._runner = runner
        self._registry = registry
        self._idle = idle
        self._poll_interval = poll_interval if poll_interval > 0 else DEFAULT_DEPENDENCY_POLL
        self._sleep = sleep or asyncio.sleep
        self._clock = clock

    async def _outstanding(self, workspace: str, slots: list[int]) -> list[int]:
        busy: list[int] = []
        for slot in slots:
            agent = self._registry.get(workspace, slot)
            if agent is None:
                raise DependencyError(
                    f"dependency slot {slot} not tracked in workspace {workspace!r}"
                )
            if not agent.target.strip():
                raise DependencyError(
                    f"dependency slot {slot} has empty tmux target in workspace {workspace!r}"
                )
            if not await self._runner.target_exists(agent.target):
                raise DependencyError(
                    f"dependency slot {slot} (target {agent.target}) is not alive (killed)"
                )
            if not await self._idle.check(workspace, slot):
                busy.append(slot)
        return busy

    async def wait(self, workspace: str, slots: Iterable[int], timeout_seconds: float = 0) -> list[int]:
        """Block until all ``slots`` are idle; returns the normalized slot list."""

        unique = normalize_dependencies(slots)
        if not unique:
            return unique
        timeout = timeout_seconds if timeout_seconds and timeout_seconds > 0 else DEFAULT_DEPENDENCY_TIMEOUT

        outstanding = await self._outstanding(workspace, unique)
        if not outstanding:
            return unique

        deadline = self._clock() + timeout
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise DependencyTimeoutError(outstanding, timeout)
            await self._sleep(min(self._poll_interval, remaining))
            outstanding = await self._outstanding(workspace, unique)
            if not outstanding:
                return unique

    async def ensure_artifacts(
        self,
        workspace: str,
        slots: Iterable[int],
        *,
        store: ArtifactStore,
        directory: ArtifactDirectory | None = None,
    ) -> list[int]:
        """Capture output for prerequisites that have none yet; returns the slots captured."""

        captured: list[int] = []
        for slot in slots:
            if store.get(workspace, slot) is not None:
                continue
            if directory is not None and directory.read_output(workspace, slot).ready:
                continue
            try:
                await self._idle.capture_artifact_for_slot(workspace, slot)
            except ArtifactCaptureError as exc:
                logger.warning(
                    "Failed to capture dependency artifact",
                    extra={"workspace": workspace, "slot": slot, "error": str(exc)},
                )
                continue
            captured.append(slot)
        return captured


__all__ = [
    "DEFAULT_DEPENDENCY_TIMEOUT",
    "DependencyError",
    "DependencyScheduler",
    "DependencyTimeoutError",
    "normalize_dependencies",
]
