from __future__ import annotations

import argparse
import importlib.util
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from termtile_mcp.artifacts import ArtifactDirectory
from termtile_mcp.storage import ActionRecord, ChromaUnavailableError


def _load_diag(name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "termtile_diag.py"
    spec = importlib.util.spec_from_file_location(name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


def _record(action: str, workspace: str, slot: int, minute: int, **details) -> ActionRecord:
    return ActionRecord(
        id=f"{workspace}::{slot}:{minute}",
        action=action,
        workspace=workspace,
        slot=slot,
        timestamp=datetime(2026, 1, 1, 12, minute, tzinfo=timezone.utc),
        details=details,
    )


class StubStore:
    def __init__(self, records: list[ActionRecord]) -> None:
        self.records = records
        self.calls: list[dict] = []

    def list_actions(self, *, workspace=None, slot=None, action=None, limit=None):
        self.calls.append({"workspace": workspace, "slot": slot, "action": action, "limit": limit})
        return self.records

    def action_counts(self):
        counts: dict[str, int] = {}
        for record in self.records:
            counts[record.action] = counts.get(record.action, 0) + 1
            if "error" in record.details:
                counts["errors"] = counts.get("errors", 0) + 1
        return counts


def test_actions_prints_one_line_per_record(monkeypatch, capsys) -> None:
    store = StubStore(
        [
            _record("spawn_agent", "ws", 0, 1),
            _record("send_to_agent", "ws", 0, 2, error="slot 0 is not tracked"),
        ]
    )
    diag = _load_diag("termtile_diag_actions")
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)

    diag.cmd_actions(argparse.Namespace(workspace="ws", slot=None, action=None, limit=0, json=False))

    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "2026-01-01T12:01:00+00:00 spawn_agent ws:0",
        "2026-01-01T12:02:00+00:00 send_to_agent ws:0 error=slot 0 is not tracked",
    ]
    assert store.calls == [{"workspace": "ws", "slot": None, "action": None, "limit": None}]


def test_actions_json_output(monkeypatch, capsys) -> None:
    store = StubStore([_record("kill_agent", "ws", 2, 5)])
    diag = _load_diag("termtile_diag_actions_json")
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)

    diag.cmd_actions(argparse.Namespace(workspace=None, slot=2, action="kill_agent", limit=3, json=True))

    payload = json.loads(capsys.readouterr().out)
    assert payload[0]["action"] == "kill_agent"
    assert payload[0]["slot"] == 2
    assert store.calls[0]["limit"] == 3


def test_metrics_summarizes_counts(monkeypatch, capsys) -> None:
    store = StubStore(
        [
            _record("spawn_agent", "ws", 0, 1),
            _record("spawn_agent", "other", 0, 2, error="unknown agent type"),
            _record("kill_agent", "ws", 0, 3),
        ]
    )
    diag = _load_diag("termtile_diag_metrics")
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)

    diag.cmd_metrics(argparse.Namespace())

    metrics = json.loads(capsys.readouterr().out)
    assert metrics == {
        "actions_total": 3,
        "action_counts": {"spawn_agent": 2, "kill_agent": 1},
        "error_count": 1,
        "workspace_counts": {"ws": 2, "other": 1},
        "last_action_at": "2026-01-01T12:03:00+00:00",
    }


def test_metrics_exits_when_store_fails(monkeypatch, capsys) -> None:
    class FailingStore(StubStore):
        def action_counts(self):
            raise ChromaUnavailableError("collection gone")

    diag = _load_diag("termtile_diag_metrics_failure")
    monkeypatch.setattr(diag, "load_store", lambda _settings: FailingStore([]))

    with pytest.raises(SystemExit):
        diag.cmd_metrics(argparse.Namespace())
    assert "Chroma unavailable: collection gone" in capsys.readouterr().out


def test_artifacts_lists_slot_directories(monkeypatch, tmp_path: Path, capsys) -> None:
    directory = ArtifactDirectory(tmp_path)
    directory.write_agent_meta("ws", 0, "claude")
    directory.write_output("ws", 0, "done")
    directory.write_agent_meta("ws", 1, "codex")
    directory.write_agent_meta("other", 0, "gemini")
    diag = _load_diag("termtile_diag_artifacts")
    monkeypatch.setattr(diag, "load_directory", lambda _settings: directory)

    diag.cmd_artifacts(argparse.Namespace(workspace="ws"))

    rows = json.loads(capsys.readouterr().out)
    assert [(row["slot"], row["agent_type"], row["ready"]) for row in rows] == [
        (0, "claude", True),
        (1, "codex", False),
    ]
    assert rows[0]["output_bytes"] == 4
    assert rows[1]["reason"].startswith("hook artifact not found")


def test_main_without_command_prints_help(capsys) -> None:
    diag = _load_diag("termtile_diag_help")

    diag.main([])

    assert "termtile MCP diagnostics" in capsys.readouterr().out
