from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from termtile_mcp.agents import default_config
from termtile_mcp.artifacts import ArtifactDirectory
from termtile_mcp.config import DEFAULT_WORKSPACE, TermtileSettings
from termtile_mcp.hooks import inject_project_file_hooks
from termtile_mcp.pipe import pipe_file_path
from termtile_mcp.registry import SlotRegistry
from termtile_mcp.server import create_server, reconcile_sessions
from termtile_mcp.tmux import FakeTmuxRunner, TmuxExecutionResult, TmuxNotFoundError, TmuxRunner
from termtile_mcp.workspace import JsonWorkspaceRegistry


class StubActionLog:
    def __init__(self) -> None:
        self.actions: list[dict[str, Any]] = []

    def ping(self) -> bool:
        return True

    def record_action(self, *, action: str, workspace: str, slot: int, details: dict[str, Any]) -> None:
        self.actions.append({"action": action, "workspace": workspace, "slot": slot, "details": details})

    def action_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self.actions:
            counts[entry["action"]] = counts.get(entry["action"], 0) + 1
        return counts


def tmux_handler(sessions: list[str]):
    def handler(args):
        if args[0] == "-V":
            return TmuxExecutionResult(args=args, returncode=0, stdout="tmux 3.4\n", stderr="")
        if args[0] == "list-sessions":
            return TmuxExecutionResult(args=args, returncode=0, stdout="\n".join(sessions) + "\n", stderr="")
        return None

    return handler


def _registry_with_daemon_session(path: Path) -> JsonWorkspaceRegistry:
    path.write_text(
        json.dumps(
            {
                "workspaces": {"0": {"name": "ws", "agent_mode": True, "terminal_count": 2}},
                "slots": {"4711": {"session_name": "termtile-ws-1"}},
            }
        ),
        encoding="utf-8",
    )
    return JsonWorkspaceRegistry(path)


def _prepare_leftovers(tmp_path: Path, directory: ArtifactDirectory) -> Path:
    directory.write_agent_meta("ws", 0, "codex")
    stale_pipe = pipe_file_path(tmp_path / "pipes", "old", 3)
    stale_pipe.parent.mkdir(parents=True, exist_ok=True)
    stale_pipe.write_bytes(b"")
    project = tmp_path / "project"
    project.mkdir()
    agent = default_config().agents["claude"].model_copy(
        update={"hook_settings_dir": ".claude", "hook_settings_file": "settings.local.json"}
    )
    inject_project_file_hooks(directory, "gone", 2, project, agent, '{"hooks": {}}')
    return stale_pipe


def test_reconcile_adopts_orphans_and_cleans_up(tmp_path: Path) -> None:
    directory = ArtifactDirectory(tmp_path / "artifacts")
    stale_pipe = _prepare_leftovers(tmp_path, directory)
    runner = FakeTmuxRunner(handler=tmux_handler(["termtile-ws-0", "termtile-ws-1", "main"]))
    registry = SlotRegistry()

    summary = asyncio.run(
        reconcile_sessions(
            runner,
            registry,
            _registry_with_daemon_session(tmp_path / "registry.json"),
            directory,
            tmp_path / "pipes",
        )
    )

    assert summary == {
        "sessions_seen": 3,
        "adopted": [{"workspace": "ws", "slot": 0, "session_name": "termtile-ws-0", "agent_type": "codex"}],
        "stale_pipes_removed": 1,
        "hooks_restored": [{"workspace": "gone", "slot": 2}],
    }
    adopted = registry.get("ws", 0)
    assert adopted.target == "termtile-ws-0:0.0"
    assert adopted.spawn_mode == "window"
    assert registry.get("ws", 1) is None
    assert not stale_pipe.exists()
    assert not (tmp_path / "project" / ".claude").exists()


def test_reconcile_without_metadata_marks_unknown(tmp_path: Path) -> None:
    runner = FakeTmuxRunner(handler=tmux_handler(["termtile-notes-4"]))
    registry = SlotRegistry()

    summary = asyncio.run(
        reconcile_sessions(
            runner,
            registry,
            JsonWorkspaceRegistry(tmp_path / "missing.json"),
            ArtifactDirectory(tmp_path / "artifacts"),
            tmp_path,
        )
    )

    assert summary["adopted"][0]["agent_type"] == "unknown"
    assert registry.get("notes", 4).agent_type == "unknown"


def test_create_server_reconciles_and_reports_status(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TERMTILE_ARTIFACT_DIR", str(tmp_path / "artifacts"))
    monkeypatch.setenv("TERMTILE_PIPE_DIR", str(tmp_path / "pipes"))
    settings = TermtileSettings()
    ArtifactDirectory(tmp_path / "artifacts").write_agent_meta("ws", 0, "claude")
    runner = FakeTmuxRunner(handler=tmux_handler(["termtile-ws-0"]))
    action_log = StubActionLog()

    server = create_server(
        settings,
        tmux_runner=runner,
        config=default_config(),
        workspaces=JsonWorkspaceRegistry(tmp_path / "registry.json"),
        action_log=action_log,
    )

    assert getattr(server, "tmux_metadata") == {"available": True, "version": "tmux 3.4", "error": None}
    assert getattr(server, "reconcile_summary")["adopted"][0]["agent_type"] == "claude"
    assert action_log.actions[0]["action"] == "reconcile"
    assert action_log.actions[0]["slot"] == -1
    assert action_log.actions[0]["workspace"] == DEFAULT_WORKSPACE

    status = getattr(server, "status_payload")()
    assert status["tmux"]["version"] == "tmux 3.4"
    assert status["tracked"]["count"] == 1
    assert status["tracked"]["workspaces"]["ws"][0]["agent_type"] == "claude"
    assert "claude" in status["agents"]["types"]
    assert status["storage"]["chroma"]["available"] is True
    assert status["storage"]["action_counts"] == {"reconcile": 1}
    assert getattr(server, "tool_handles").kill_agent is not None


def test_create_server_without_action_log(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TERMTILE_ARTIFACT_DIR", str(tmp_path / "artifacts"))
    monkeypatch.setenv("TERMTILE_PIPE_DIR", str(tmp_path / "pipes"))
    monkeypatch.delenv("TERMTILE_ACTION_LOG", raising=False)

    server = create_server(
        TermtileSettings(),
        tmux_runner=FakeTmuxRunner(handler=tmux_handler([])),
        config=default_config(),
        workspaces=JsonWorkspaceRegistry(tmp_path / "registry.json"),
    )

    assert getattr(server, "action_log") is None
    status = getattr(server, "status_payload")()
    assert status["storage"]["chroma"]["enabled"] is False
    assert status["reconcile"]["sessions_seen"] == 0


def test_create_server_without_tmux_stays_up(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TERMTILE_ARTIFACT_DIR", str(tmp_path / "artifacts"))
    monkeypatch.setenv("TERMTILE_PIPE_DIR", str(tmp_path / "pipes"))
    monkeypatch.delenv("TERMTILE_ACTION_LOG", raising=False)
    runner = TmuxRunner(tmp_path / "missing-tmux")

    server = create_server(
        TermtileSettings(),
        tmux_runner=runner,
        config=default_config(),
        workspaces=JsonWorkspaceRegistry(tmp_path / "registry.json"),
    )

    metadata = getattr(server, "tmux_metadata")
    assert metadata["available"] is False
    assert "tmux executable not found" in metadata["error"]
    assert getattr(server, "reconcile_summary")["sessions_seen"] == 0
    with pytest.raises(TmuxNotFoundError):
        asyncio.run(runner.list_sessions())
