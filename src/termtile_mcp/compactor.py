"""Close the gap left when a window-mode slot is removed."""

from __future__ import annotations

import logging

from .artifacts import ArtifactDirectory
from .registry import SlotRegistry
from .tmux import TmuxError, TmuxRunner, session_name, target_for_session

logger = logging.getLogger(__name__)


async def compact_window_slots(
    runner: TmuxRunner,
    registry: SlotRegistry,
    directory: ArtifactDirectory,
    workspace: str,
    removed_slot: int,
) -> list[tuple[int, int]]:
    """Shift every slot above ``removed_slot`` down by one; returns ``(old, new)`` pairs.

    Window-mode sessions are renamed so their suffix matches the new slot.
    Artifact directories, in-memory artifacts and read snapshots follow their slot.
    """

    if removed_slot < 0:
        return []

    moves: list[tuple[int, int]] = []
    renames: list[tuple[str, str]] = []
    for slot, agent in sorted(registry.list(workspace).items()):
        if slot <= removed_slot:
            continue
        new_slot = slot - 1
        new_target = None
        if agent.spawn_mode == "window":
            old_session = agent.target.split(":", 1)[0] or session_name(workspace, slot)
            new_session = session_name(workspace, new_slot)
            if old_session != new_session:
                renames.append((old_session, new_session))
            new_target = target_for_session(new_session)
        registry.relocate(workspace, slot, workspace, new_slot, target=new_target)
        moves.append((slot, new_slot))

    for old_slot, new_slot in moves:
        try:
            directory.move(workspace, old_slot, workspace, new_slot)
        except OSError as exc:
            logger.warning(
                "Failed to move artifact directory",
                extra={"workspace": workspace, "from": old_slot, "to": new_slot, "error": str(exc)},
            )

    for old_session, new_session in renames:
        try:
            await runner.rename_session(old_session, new_session)
        except TmuxError as exc:
            logger.warning(
                "Failed to rename shifted session",
                extra={"old": old_session, "new": new_session, "error": str(exc)},
            )
    return moves


__all__ = ["compact_window_slots"]
