from __future__ import annotations

import asyncio
from pathlib import Path

from termtile_mcp.artifacts import ArtifactDirectory, ArtifactStore
from termtile_mcp.compactor import compact_window_slots
from termtile_mcp.registry import SlotRegistry
from termtile_mcp.tmux import FakeTmuxRunner


def _window_registry(store: ArtifactStore, slots: list[int]) -> SlotRegistry:
    registry = SlotRegistry(store)
    for slot in slots:
        registry.track_at("ws", slot, "claude", f"termtile-ws-{slot}:0.0", "window")
    return registry


def test_slots_above_removed_shift_down(tmp_path: Path) -> None:
    store = ArtifactStore()
    registry = _window_registry(store, [0, 2, 3])
    directory = ArtifactDirectory(tmp_path)
    directory.write_output("ws", 2, "two")
    directory.write_output("ws", 3, "three")
    store.set("ws", 3, "three in memory")
    runner = FakeTmuxRunner()

    moves = asyncio.run(compact_window_slots(runner, registry, directory, "ws", 1))

    assert moves == [(2, 1), (3, 2)]
    assert sorted(registry.list("ws")) == [0, 1, 2]
    assert registry.target("ws", 1) == "termtile-ws-1:0.0"
    assert registry.target("ws", 2) == "termtile-ws-2:0.0"
    assert directory.read_output("ws", 1).output == "two"
    assert directory.read_output("ws", 2).output == "three"
    assert store.get("ws", 2).output == "three in memory"
    assert runner.invocations == [
        ("rename-session", "-t", "termtile-ws-2", "termtile-ws-1"),
        ("rename-session", "-t", "termtile-ws-3", "termtile-ws-2"),
    ]


def test_pane_slots_shift_without_rename(tmp_path: Path) -> None:
    registry = SlotRegistry()
    registry.track_at("ws", 1, "codex", "%7", "pane")
    runner = FakeTmuxRunner()

    moves = asyncio.run(compact_window_slots(runner, registry, ArtifactDirectory(tmp_path), "ws", 0))

    assert moves == [(1, 0)]
    assert registry.target("ws", 0) == "%7"
    assert runner.invocations == []


def test_negative_removed_slot_is_ignored(tmp_path: Path) -> None:
    registry = _window_registry(ArtifactStore(), [0])

    assert asyncio.run(
        compact_window_slots(FakeTmuxRunner(), registry, ArtifactDirectory(tmp_path), "ws", -1)
    ) == []
