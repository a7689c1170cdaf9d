from __future__ import annotations

import json
from pathlib import Path

import pytest

from termtile_mcp.config import DEFAULT_WORKSPACE
from termtile_mcp.errors import WorkspaceResolutionError
from termtile_mcp.workspace import (
    JsonWorkspaceRegistry,
    WorkspaceRegistryError,
    WorkspaceResolver,
    best_effort,
    find_project_binding,
)


def _write_registry(path: Path, workspaces: dict, slots: dict | None = None) -> JsonWorkspaceRegistry:
    path.write_text(json.dumps({"workspaces": workspaces, "slots": slots or {}}), encoding="utf-8")
    return JsonWorkspaceRegistry(path)


def test_registry_reads_workspaces(tmp_path: Path) -> None:
    registry = _write_registry(
        tmp_path / "registry.json",
        {
            "1": {"name": "beta", "terminal_count": 2, "agent_mode": True, "agent_slots": [1, 0]},
            "0": {"name": "alpha", "cwd": "/src/alpha"},
        },
        {"123": {"session_name": "termtile-beta-0"}},
    )

    assert [info.name for info in registry.list()] == ["alpha", "beta"]
    beta = registry.get("beta")
    assert beta is not None
    assert beta.desktop == 1
    assert beta.agent_slots == [0, 1]
    assert registry.get("missing") is None
    assert registry.has_session("termtile-beta-0")
    assert not registry.has_session("termtile-beta-1")


def test_missing_registry_file_is_empty(tmp_path: Path) -> None:
    registry = JsonWorkspaceRegistry(tmp_path / "absent.json")

    assert registry.list() == []
    assert not registry.has_session("termtile-ws-0")


def test_corrupt_registry_raises(tmp_path: Path) -> None:
    path = tmp_path / "registry.json"
    path.write_text("{broken", encoding="utf-8")

    with pytest.raises(WorkspaceRegistryError):
        JsonWorkspaceRegistry(path).list()


def test_add_remove_and_move_terminals(tmp_path: Path) -> None:
    path = tmp_path / "registry.json"
    registry = _write_registry(
        path,
        {
            "0": {"name": "src", "terminal_count": 3, "agent_slots": [0, 1, 2]},
            "1": {"name": "dst", "terminal_count": 1, "agent_slots": [0]},
        },
    )

    assert registry.add_terminal(0) == 3
    registry.remove_terminal(0, 1)
    assert registry.get("src").agent_slots == [0, 1, 2]
    assert registry.get("src").terminal_count == 3

    assert registry.move_terminal(0, 0, 1) == 1
    assert registry.get("src").terminal_count == 2
    assert registry.get("dst").agent_slots == [0, 1]

    with pytest.raises(WorkspaceRegistryError, match="out of range"):
        registry.remove_terminal(0, 9)
    with pytest.raises(WorkspaceRegistryError, match="no workspace on desktop"):
        registry.add_terminal(7)
    assert json.loads(path.read_text(encoding="utf-8"))["workspaces"]["1"]["terminal_count"] == 2


def test_project_binding_prefers_local_file(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    config_dir = tmp_path / ".termtile"
    config_dir.mkdir()
    (config_dir / "workspace.yaml").write_text("workspace: shared\n", encoding="utf-8")
    (config_dir / "local.yaml").write_text("workspace: mine\n", encoding="utf-8")
    nested = tmp_path / "pkg" / "module"
    nested.mkdir(parents=True)

    binding = find_project_binding(nested)

    assert binding is not None
    assert binding.workspace == "mine"
    assert binding.root == tmp_path.resolve()


def test_project_binding_requires_root_marker(tmp_path: Path) -> None:
    config_dir = tmp_path / ".termtile"
    config_dir.mkdir()
    (config_dir / "workspace.yaml").write_text(
        "workspace: shared\nproject:\n  root_marker: pyproject.toml\n", encoding="utf-8"
    )

    with pytest.raises(WorkspaceResolutionError, match="root_marker"):
        find_project_binding(tmp_path)


def test_resolver_precedence(tmp_path: Path) -> None:
    registry = _write_registry(
        tmp_path / "registry.json",
        {"0": {"name": "agents", "agent_mode": True}, "1": {"name": "notes"}},
    )
    resolver = WorkspaceResolver(registry, cwd=lambda: tmp_path)

    assert resolver.for_read("notes", "agents", "read_from_agent") == "notes"
    assert resolver.for_read(None, "agents", "read_from_agent") == "agents"
    assert resolver.for_read(None, None, "read_from_agent") == "agents"
    assert resolver.is_agent_mode("agents")
    assert not resolver.is_agent_mode("notes")
    assert resolver.is_agent_mode(DEFAULT_WORKSPACE)


def test_resolver_uses_project_binding(tmp_path: Path) -> None:
    registry = _write_registry(tmp_path / "registry.json", {"0": {"name": "proj", "agent_mode": True}})
    (tmp_path / ".git").mkdir()
    (tmp_path / ".termtile").mkdir()
    (tmp_path / ".termtile" / "workspace.yaml").write_text("workspace: proj\n", encoding="utf-8")
    resolver = WorkspaceResolver(registry, cwd=lambda: tmp_path)

    assert resolver.for_spawn(None, None) == "proj"
    assert resolver.project_root() == tmp_path.resolve()


def test_resolver_errors(tmp_path: Path) -> None:
    registry = _write_registry(
        tmp_path / "registry.json",
        {"0": {"name": "one", "agent_mode": True}, "1": {"name": "two", "agent_mode": True}},
    )
    resolver = WorkspaceResolver(registry, cwd=lambda: tmp_path)

    with pytest.raises(WorkspaceResolutionError, match="ambiguous workspace for list_agents"):
        resolver.for_read(None, None, "list_agents")
    with pytest.raises(WorkspaceResolutionError, match="not found in registry"):
        resolver.for_spawn("three", None)
    with pytest.raises(WorkspaceResolutionError, match="legacy default"):
        resolver.for_spawn(DEFAULT_WORKSPACE, None)
    assert resolver.for_read("three", None, "read_from_agent") == "three"


def test_resolver_without_candidates(tmp_path: Path) -> None:
    resolver = WorkspaceResolver(JsonWorkspaceRegistry(tmp_path / "none.json"), cwd=lambda: tmp_path)

    with pytest.raises(WorkspaceResolutionError, match="unable to resolve workspace"):
        resolver.for_read(None, None, "wait_for_idle")
    assert resolver.for_spawn(DEFAULT_WORKSPACE, None) == DEFAULT_WORKSPACE


def test_best_effort_swallows_desktop_failures() -> None:
    def broken() -> None:
        raise OSError("no display")

    assert best_effort("re-tile", broken) is None
    assert best_effort("sum", lambda a, b: a + b, 1, 2) == 3
