"""``termtile-hook``: commands invoked by agent hooks inside a tmux session."""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
import time
from typing import Callable

from ..agents import AgentConfig, ConfigLoadError, ConfigLoader, default_config
from ..artifacts import CHECKPOINT_FILE, CONTEXT_FILE, ArtifactDirectory
from ..config import DEFAULT_WORKSPACE, get_settings
from ..errors import TermtileError
from ..tmux.utils import parse_session_name
from .render import render_hook_output

TRANSCRIPT_RETRIES = 10
TRANSCRIPT_RETRY_DELAY = 0.3


class HookContextError(TermtileError):
    """Raised when the agent's response cannot be recovered from hook context."""


class _NoAssistantResponse(HookContextError):
    pass


def detect_workspace_slot() -> tuple[str, int]:
    """Read the current tmux session name and split it into workspace and slot."""

    try:
        completed = subprocess.run(
            ["tmux", "display-message", "-p", "#S"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise HookContextError(f"not in a tmux session: {exc}") from exc
    name = completed.stdout.strip()
    if not name:
        raise HookContextError("empty tmux session name")
    parsed = parse_session_name(name)
    if parsed is None:
        raise HookContextError(f"session name {name!r} does not match termtile-{{workspace}}-{{slot}} format")
    return parsed


def artifact_directory() -> ArtifactDirectory:
    return ArtifactDirectory(get_settings().resolved_artifact_root)


def load_agent_config(directory: ArtifactDirectory, workspace: str, slot: int) -> AgentConfig | None:
    """Look up the config of the agent recorded in the slot's ``agent_meta.json``."""

    agent_type = directory.read_agent_meta(workspace, slot)
    if agent_type is None:
        return None
    try:
        config = ConfigLoader(get_settings().config_path).load()
    except ConfigLoadError:
        config = default_config()
    return config.agents.get(agent_type)


def parse_transcript(path: str) -> str:
    """Return the text of the last assistant message in a JSONL transcript."""

    try:
        with open(path, encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except OSError as exc:
        raise HookContextError(f"failed to read transcript {path}: {exc}") from exc

    last = ""
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict) or entry.get("type") != "assistant":
            continue
        message = entry.get("message")
        if not isinstance(message, dict):
            continue
        for block in message.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                last = block["text"]
    if not last:
        raise _NoAssistantResponse("no assistant response found in transcript")
    return last


def extract_output_from_hook_context(
    raw: str,
    response_field: str = "",
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Pull the agent's final response out of the hook context JSON read from stdin.

    ``response_field`` names a context key holding the response directly. Without
    it the last assistant message of ``transcript_path`` is used, retried while the
    agent may still be flushing the transcript.
    """

    if not raw:
        raise HookContextError("no hook context on stdin")
    try:
        context = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HookContextError(f"failed to parse hook context: {exc}") from exc
    if not isinstance(context, dict):
        raise HookContextError("hook context must be a JSON object")

    if response_field:
        value = context.get(response_field)
        if isinstance(value, str) and value:
            return value

    transcript = context.get("transcript_path")
    if not isinstance(transcript, str) or not transcript:
        if response_field:
            raise HookContextError(f"field {response_field!r} is empty and no transcript_path in hook context")
        raise HookContextError("no transcript_path in hook context")

    for attempt in range(TRANSCRIPT_RETRIES):
        if attempt:
            sleep(TRANSCRIPT_RETRY_DELAY)
        last_attempt = attempt == TRANSCRIPT_RETRIES - 1
        try:
            text = parse_transcript(transcript)
        except _NoAssistantResponse:
            if last_attempt:
                raise
            continue
        if text.strip():
            return text
        if last_attempt:
            raise HookContextError("assistant response is empty after retries")
    raise HookContextError("no assistant response found in transcript after retries")


def _resolve_slot(args: argparse.Namespace) -> tuple[str, int] | None:
    workspace, slot = args.workspace, args.slot
    if args.auto:
        try:
            workspace, slot = detect_workspace_slot()
        except HookContextError:
            return None
    if slot < 0:
        return None
    return workspace.strip() or DEFAULT_WORKSPACE, slot


def _print_context(args: argparse.Namespace, filename: str, *, consume: bool) -> int:
    resolved = _resolve_slot(args)
    if resolved is None:
        return 0
    workspace, slot = resolved
    directory = artifact_directory()
    path = directory.file(workspace, slot, filename)
    try:
        content = path.read_text(encoding="utf-8").strip()
    except OSError:
        return 0
    if not content:
        return 0

    agent = load_agent_config(directory, workspace, slot)
    sys.stdout.write(render_hook_output(agent.hook_output if agent else None, content))
    if consume:
        path.unlink(missing_ok=True)
    return 0


def cmd_start(args: argparse.Namespace) -> int:
    return _print_context(args, CONTEXT_FILE, consume=False)


def cmd_check(args: argparse.Namespace) -> int:
    return _print_context(args, CHECKPOINT_FILE, consume=True)


def cmd_emit(args: argparse.Namespace) -> int:
    directory = artifact_directory()
    workspace, slot = args.workspace, args.slot

    if args.auto:
        try:
            workspace, slot = detect_workspace_slot()
        except HookContextError as exc:
            print(f"auto-detect failed: {exc}", file=sys.stderr)
            return 1
        agent = load_agent_config(directory, workspace, slot)
        try:
            output = extract_output_from_hook_context(
                sys.stdin.read(), agent.hook_response_field if agent else ""
            )
        except HookContextError as exc:
            print(f"failed to extract output from hook context: {exc}", file=sys.stderr)
            return 1
    elif args.output is not None:
        output = args.output
    elif sys.stdin.isatty():
        print("emit requires --output or stdin input", file=sys.stderr)
        return 2
    else:
        output = sys.stdin.read()

    if slot < 0:
        print("--slot must be >= 0 (or use --auto)", file=sys.stderr)
        return 2

    try:
        directory.write_output(workspace, slot, output)
    except OSError as exc:
        print(f"failed to write artifact: {exc}", file=sys.stderr)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="termtile-hook", description="termtile agent hook commands")
    sub = parser.add_subparsers(dest="cmd")

    def add_target_options(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "--auto", action="store_true", help="Detect workspace and slot from the tmux session name"
        )
        subparser.add_argument("--workspace", default=DEFAULT_WORKSPACE, help="Target workspace name")
        subparser.add_argument("--slot", type=int, default=-1, help="Target workspace slot index")

    p_start = sub.add_parser("start", help="Print queued task context (context.md)")
    add_target_options(p_start)
    p_start.set_defaults(func=cmd_start)

    p_check = sub.add_parser("check", help="Print and consume mid-task guidance (checkpoint.json)")
    add_target_options(p_check)
    p_check.set_defaults(func=cmd_check)

    p_emit = sub.add_parser("emit", help="Write the completion artifact (output.json)")
    add_target_options(p_emit)
    p_emit.add_argument("--output", default=None, help="Output text (read from stdin when omitted)")
    p_emit.set_defaults(func=cmd_emit)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return 2
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
