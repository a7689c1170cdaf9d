from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from termtile_mcp.agents import AgentConfig
from termtile_mcp.artifacts import ArtifactDirectory
from termtile_mcp.hooks import cli


@pytest.fixture()
def directory(monkeypatch, tmp_path: Path) -> ArtifactDirectory:
    artifacts = ArtifactDirectory(tmp_path)
    monkeypatch.setattr(cli, "artifact_directory", lambda: artifacts)
    monkeypatch.setattr(cli, "load_agent_config", lambda directory, workspace, slot: None)
    return artifacts


def _transcript(path: Path, *texts: str) -> Path:
    lines = [json.dumps({"type": "user", "message": {"content": [{"type": "text", "text": "task"}]}})]
    for text in texts:
        lines.append(
            json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})
        )
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def test_start_prints_context_without_consuming(directory, capsys) -> None:
    directory.write_context("ws", 0, "queued task\n")

    assert cli.main(["start", "--workspace", "ws", "--slot", "0"]) == 0
    assert capsys.readouterr().out == "queued task"
    assert directory.file("ws", 0, "context.md").exists()


def test_check_consumes_checkpoint_and_formats_output(monkeypatch, directory, capsys) -> None:
    agent = AgentConfig(command="claude", hook_output={"additionalContext": "{{context}}"})
    monkeypatch.setattr(cli, "load_agent_config", lambda directory, workspace, slot: agent)
    directory.write_checkpoint("ws", 1, "focus on tests")

    assert cli.main(["check", "--workspace", "ws", "--slot", "1"]) == 0
    assert json.loads(capsys.readouterr().out) == {"additionalContext": "focus on tests"}
    assert not directory.file("ws", 1, "checkpoint.json").exists()


def test_start_is_silent_outside_tmux(monkeypatch, directory, capsys) -> None:
    def no_session() -> tuple[str, int]:
        raise cli.HookContextError("not in a tmux session")

    monkeypatch.setattr(cli, "detect_workspace_slot", no_session)

    assert cli.main(["start", "--auto"]) == 0
    assert capsys.readouterr().out == ""


def test_emit_writes_output_file(directory) -> None:
    assert cli.main(["emit", "--workspace", "ws", "--slot", "2", "--output", "summary"]) == 0

    result = directory.read_output("ws", 2)
    assert result.ready
    assert result.output == "summary"


def test_emit_requires_slot(directory, capsys) -> None:
    assert cli.main(["emit", "--output", "summary"]) == 2
    assert "--slot must be >= 0" in capsys.readouterr().err


def test_emit_auto_reads_transcript(monkeypatch, directory, tmp_path: Path) -> None:
    transcript = _transcript(tmp_path / "session.jsonl", "first", "final answer")
    monkeypatch.setattr(cli, "detect_workspace_slot", lambda: ("proj", 3))
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps({"transcript_path": str(transcript)})))

    assert cli.main(["emit", "--auto"]) == 0
    assert directory.read_output("proj", 3).output == "final answer"


def test_extract_prefers_response_field() -> None:
    raw = json.dumps({"last_message": "from field", "transcript_path": "/nonexistent"})

    assert cli.extract_output_from_hook_context(raw, "last_message") == "from field"


def test_extract_retries_until_transcript_has_answer(tmp_path: Path) -> None:
    transcript = _transcript(tmp_path / "session.jsonl")
    sleeps: list[float] = []

    def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        _transcript(transcript, "late answer")

    raw = json.dumps({"transcript_path": str(transcript)})

    assert cli.extract_output_from_hook_context(raw, sleep=sleep) == "late answer"
    assert sleeps == [cli.TRANSCRIPT_RETRY_DELAY]


@pytest.mark.parametrize(
    "raw, message",
    [
        ("", "no hook context"),
        ("{oops", "failed to parse"),
        ("[]", "must be a JSON object"),
        ("{}", "no transcript_path"),
    ],
)
def test_extract_rejects_bad_context(raw: str, message: str) -> None:
    with pytest.raises(cli.HookContextError, match=message):
        cli.extract_output_from_hook_context(raw)


def test_no_subcommand_prints_help(capsys) -> None:
    assert cli.main([]) == 2
    assert "termtile-hook" in capsys.readouterr().err


def test_parse_transcript_skips_non_object_messages(tmp_path: Path) -> None:
    transcript = _transcript(tmp_path / "session.jsonl", "real answer")
    with transcript.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps({"type": "assistant", "message": "streamed text"}) + "\n")

    assert cli.parse_transcript(str(transcript)) == "real answer"
