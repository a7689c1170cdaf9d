"""Tiered idle detection for tracked agents."""

from __future__ import annotations

import logging
from typing import Mapping

from .agents import AgentConfig
from .artifacts import Artifact, ArtifactStore
from .errors import TermtileError
from .fence import count_close_tags, trim_output
from .output import clean_output, contains_idle_pattern
from .pipe import count_close_tags_in_pipe_file, pipe_file_size
from .registry import SlotRegistry, TrackedAgent
from .tmux import TmuxError, TmuxRunner

logger = logging.getLogger(__name__)

IDLE_CAPTURE_LINES = 30
ARTIFACT_CAPTURE_LINES = 200


class ArtifactCaptureError(TermtileError):
    """Raised when a slot's output cannot be captured on demand."""


class IdleDetector:
    """Decides whether an agent has finished its current turn.

    Fence-enabled slots are judged only by close markers: the pipe file when one
    is attached, otherwise a short pane capture. Other agents are matched
    against their idle prompt, and as a last resort the pane's shell is idle
    when it has no child processes.
    """

    def __init__(
        self,
        runner: TmuxRunner,
        registry: SlotRegistry,
        agents: Mapping[str, AgentConfig],
        artifacts: ArtifactStore | None = None,
    ) -> None:
        self._runner = runner
        self._registry = registry
        self._agents = agents
        self._artifacts = artifacts

    async def check(self, workspace: str, slot: int) -> bool:
        agent = self._registry.get(workspace, slot)
        if agent is None or not agent.target:
            return False

        if agent.response_fence:
            if agent.pipe_path:
                if pipe_file_size(agent.pipe_path) <= agent.last_pipe_size:
                    return False
                try:
                    count, size = count_close_tags_in_pipe_file(agent.pipe_path)
                except OSError as exc:
                    logger.debug(
                        "Pipe file unreadable; falling back to capture",
                        extra={"workspace": workspace, "slot": slot, "error": str(exc)},
                    )
                else:
                    self._registry.update_pipe_size(workspace, slot, size)
                    return await self._evaluate_count(workspace, slot, agent, count)

            try:
                output = await self._runner.capture_pane(agent.target, IDLE_CAPTURE_LINES)
            except TmuxError:
                return False
            return await self._evaluate_count(workspace, slot, agent, count_close_tags(output))

        try:
            output = await self._runner.capture_pane(agent.target, IDLE_CAPTURE_LINES)
        except TmuxError:
            return False

        config = self._agents.get(agent.agent_type)
        if config is not None and config.idle_pattern:
            return contains_idle_pattern(output, config.idle_pattern)

        try:
            busy = await self._runner.has_child_processes(agent.target)
        except TmuxError:
            return False
        return not busy

    async def _evaluate_count(self, workspace: str, slot: int, agent: TrackedAgent, count: int) -> bool:
        if count <= agent.baseline_close_count:
            return False
        if self._artifacts is not None and count > agent.last_artifact_close_count:
            await self.capture_fence_artifact(workspace, slot, agent.target, count)
        return True

    async def capture_fence_artifact(self, workspace: str, slot: int, target: str, count: int) -> None:
        """Store the fenced answer from full scrollback; capture failures are ignored."""

        if self._artifacts is None:
            return
        try:
            full = await self._runner.capture_pane(target, 0)
        except TmuxError as exc:
            logger.debug(
                "Fence artifact capture failed",
                extra={"workspace": workspace, "slot": slot, "error": str(exc)},
            )
            return
        self._artifacts.set(workspace, slot, trim_output(clean_output(full), True))
        self._registry.set_last_artifact_count(workspace, slot, count)

    async def capture_artifact_for_slot(self, workspace: str, slot: int) -> Artifact:
        """Capture a slot's latest output into the artifact store."""

        if self._artifacts is None:
            raise ArtifactCaptureError("artifact store not initialized")
        agent = self._registry.get(workspace, slot)
        if agent is None:
            raise ArtifactCaptureError(f"no agent tracked in workspace {workspace!r} slot {slot}")
        if not agent.target.strip():
            raise ArtifactCaptureError(f"slot {slot} has empty tmux target in workspace {workspace!r}")
        if not await self._runner.target_exists(agent.target):
            raise ArtifactCaptureError(f"slot {slot} (target {agent.target}) is not alive (killed)")

        lines = 0 if agent.response_fence else ARTIFACT_CAPTURE_LINES
        try:
            raw = await self._runner.capture_pane(agent.target, lines)
        except TmuxError as exc:
            raise ArtifactCaptureError(str(exc)) from exc
        artifact = self._artifacts.set(workspace, slot, trim_output(clean_output(raw), agent.response_fence))
        if agent.response_fence:
            self._registry.set_last_artifact_count(workspace, slot, count_close_tags(raw))
        return artifact


__all__ = ["ARTIFACT_CAPTURE_LINES", "ArtifactCaptureError", "IDLE_CAPTURE_LINES", "IdleDetector"]
