from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from termtile_mcp.agents import AgentConfig, TermtileConfig, default_config
from termtile_mcp.artifacts import ArtifactDirectory, ArtifactStore
from termtile_mcp.config import DEFAULT_WORKSPACE
from termtile_mcp.deps import DependencyScheduler
from termtile_mcp.errors import SpawnError
from termtile_mcp.fence import FENCE_INSTRUCTION
from termtile_mcp.idle import IdleDetector
from termtile_mcp.pipe import pipe_file_path
from termtile_mcp.registry import SlotRegistry
from termtile_mcp.spawn import SpawnOrchestrator, SpawnRequest, resolve_spawn_mode
from termtile_mcp.tmux import FakeTmuxRunner, TmuxExecutionResult, shell_quote
from termtile_mcp.workspace import JsonWorkspaceRegistry, WorkspaceResolver


class TickingClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


class RecordingDesktop:
    def __init__(self) -> None:
        self.retiles = 0
        self.moves: list[tuple[int, int]] = []

    def retile(self) -> None:
        self.retiles += 1

    def current_desktop(self) -> int | None:
        return 5

    def active_window(self) -> int | None:
        return 100

    def focus_window(self, window_id: int) -> None:
        return None

    def find_window(self, title: str) -> int | None:
        return 200

    def move_window_to_desktop(self, window_id: int, desktop: int) -> None:
        self.moves.append((window_id, desktop))


def _result(args, stdout: str = "", returncode: int = 0) -> TmuxExecutionResult:
    return TmuxExecutionResult(args=args, returncode=returncode, stdout=stdout, stderr="")


def tmux_handler(*, attached: str | None = "main", screen: str = "$ ", has_session: bool = True, busy: bool = False):
    def handler(args):
        command = args[0]
        if command == "list-clients":
            return _result(args, f"{attached}\n") if attached else _result(args, returncode=1)
        if command == "split-window":
            return _result(args, "%5\n")
        if command == "capture-pane":
            return _result(args, screen)
        if command == "has-session":
            return _result(args, returncode=0 if has_session else 1)
        if command == "display-message" and args[-1] == "#{pane_pid}":
            return _result(args, "77\n")
        if command == "pgrep":
            return _result(args, returncode=0 if busy else 1)
        return None

    return handler


async def _no_sleep(seconds: float) -> None:
    return None


def build(
    tmp_path: Path,
    runner: FakeTmuxRunner,
    *,
    config: TermtileConfig | None = None,
    workspaces: dict | None = None,
    desktop: RecordingDesktop | None = None,
):
    config = config or TermtileConfig(
        agents={"shell": AgentConfig(command="bash", output_mode="terminal")},
        terminal_spawn_commands={"kitty": "kitty --directory {{dir}} {{cmd}}"},
    )
    registry_path = tmp_path / "registry.json"
    registry_path.write_text(json.dumps({"workspaces": workspaces or {}, "slots": {}}), encoding="utf-8")
    store = ArtifactStore()
    registry = SlotRegistry(store)
    workspace_registry = JsonWorkspaceRegistry(registry_path)
    resolver = WorkspaceResolver(workspace_registry, cwd=lambda: tmp_path)
    idle = IdleDetector(runner, registry, config.agents, store)
    scheduler = DependencyScheduler(runner, registry, idle, sleep=_no_sleep, clock=TickingClock())
    spawner = SpawnOrchestrator(
        runner,
        registry,
        config,
        artifacts=store,
        directory=ArtifactDirectory(tmp_path / "artifacts"),
        resolver=resolver,
        workspaces=workspace_registry,
        scheduler=scheduler,
        pipe_dir=tmp_path / "pipes",
        desktop=desktop,
        home=lambda: tmp_path,
        sleep=_no_sleep,
        clock=TickingClock(),
    )
    return spawner, registry, store, workspace_registry


def test_resolve_spawn_mode() -> None:
    assert resolve_spawn_mode(True, "pane") == "window"
    assert resolve_spawn_mode(False, "window") == "pane"
    assert resolve_spawn_mode(None, "window") == "window"
    assert resolve_spawn_mode(None, "") == "pane"


def test_unknown_agent_type(tmp_path: Path) -> None:
    spawner, *_ = build(tmp_path, FakeTmuxRunner())

    with pytest.raises(ValueError, match="unknown agent type 'nope'"):
        asyncio.run(spawner.spawn(SpawnRequest(agent_type="nope", workspace=DEFAULT_WORKSPACE)))


def test_pane_spawn_sends_task_after_ready(tmp_path: Path) -> None:
    runner = FakeTmuxRunner(handler=tmux_handler())
    spawner, registry, _, _ = build(tmp_path, runner)

    result = asyncio.run(
        spawner.spawn(
            SpawnRequest(agent_type="shell", workspace=DEFAULT_WORKSPACE, cwd="/work", task="run tests")
        )
    )

    assert result.to_dict() == {
        "slot": 0,
        "session_name": "%5",
        "agent_type": "shell",
        "workspace": DEFAULT_WORKSPACE,
        "spawn_mode": "pane",
    }
    assert ("split-window", "-t", "main", "-P", "-F", "#{pane_id}", "-c", "/work", "bash") in runner.invocations
    assert ("select-layout", "-t", "%5", "tiled") in runner.invocations
    assert ("send-keys", "-l", "-t", "%5", "run tests") in runner.invocations
    agent = registry.get(DEFAULT_WORKSPACE, 0)
    assert agent is not None and agent.spawn_mode == "pane"
    assert ArtifactDirectory(tmp_path / "artifacts").read_agent_meta(DEFAULT_WORKSPACE, 0) == "shell"


def test_pane_spawn_requires_attached_session(tmp_path: Path) -> None:
    runner = FakeTmuxRunner(handler=tmux_handler(attached=None))
    spawner, registry, _, _ = build(tmp_path, runner)

    with pytest.raises(SpawnError, match="no attached tmux session"):
        asyncio.run(spawner.spawn(SpawnRequest(agent_type="shell", workspace=DEFAULT_WORKSPACE)))
    assert registry.list(DEFAULT_WORKSPACE) == {}


def test_fenced_prompt_is_embedded_and_pipe_started(tmp_path: Path) -> None:
    runner = FakeTmuxRunner(handler=tmux_handler())
    spawner, registry, _, _ = build(tmp_path, runner, config=default_config())

    result = asyncio.run(
        spawner.spawn(
            SpawnRequest(agent_type="claude", workspace=DEFAULT_WORKSPACE, task="fix bug", window=False)
        )
    )

    assert result.prompt_as_arg
    split = next(args for args in runner.invocations if args[0] == "split-window")
    assert split[-1].startswith("claude --dangerously-skip-permissions 'IMPORTANT:")
    assert split[-1].endswith("fix bug'")
    assert not any(args[:2] == ("send-keys", "-l") for args in runner.invocations)

    pipe = pipe_file_path(tmp_path / "pipes", DEFAULT_WORKSPACE, 0)
    assert ("pipe-pane", "-o", "-t", "%5", f"cat >> {shell_quote(str(pipe))}") in runner.invocations
    agent = registry.get(DEFAULT_WORKSPACE, 0)
    assert agent.response_fence
    assert agent.pipe_path == str(pipe)
    assert agent.baseline_close_count == 0


def test_pipe_task_agent_gets_printf_pipeline(tmp_path: Path) -> None:
    spawner, *_ = build(tmp_path, FakeTmuxRunner(), config=default_config())
    agent = default_config().agents["cecli"]

    launch = spawner.build_launch(
        DEFAULT_WORKSPACE, SpawnRequest(agent_type="cecli", task="add docs"), agent, "add docs", "pane"
    )

    assert launch.pipe_in_cmd and not launch.prompt_in_cmd
    assert launch.command.startswith("printf '%s\\n' 'IMPORTANT:")
    assert launch.command.endswith("| cecli --no-tui --yes-always --no-auto-commits --no-check-update "
                                   "--no-show-model-warnings --model anthropic/claude-sonnet-4-5")
    assert launch.task.startswith(FENCE_INSTRUCTION)


def test_hooks_agent_without_native_delivery_gets_file_instructions(tmp_path: Path) -> None:
    config = TermtileConfig(agents={"aider": AgentConfig(command="aider")})
    spawner, *_ = build(tmp_path, FakeTmuxRunner(), config=config)

    launch = spawner.build_launch(
        DEFAULT_WORKSPACE, SpawnRequest(agent_type="aider"), config.agents["aider"], "do it", "pane"
    )

    assert not launch.fence
    assert launch.needs_file_write_instructions
    assert launch.command == "aider"


def test_cli_flag_hook_delivery(tmp_path: Path) -> None:
    agent = AgentConfig(
        command="gemini",
        hook_delivery="cli_flag",
        hook_settings_flag="--settings",
        hook_events={"on_end": "AfterAgent"},
        hook_entry={"command": "{{command}}"},
        hook_wrapper={"hooks": "{{events}}"},
    )
    config = TermtileConfig(agents={"gemini": agent})
    spawner, *_ = build(tmp_path, FakeTmuxRunner(), config=config)

    launch = spawner.build_launch(DEFAULT_WORKSPACE, SpawnRequest(agent_type="gemini"), agent, "", "pane")

    assert launch.command.startswith("gemini --settings '")
    assert "termtile-hook emit --auto" in launch.command
    assert not launch.needs_file_write_instructions


def test_window_spawn_registers_terminal(tmp_path: Path) -> None:
    runner = FakeTmuxRunner(handler=tmux_handler())
    desktop = RecordingDesktop()
    spawner, registry, _, workspaces = build(
        tmp_path,
        runner,
        workspaces={
            "0": {
                "name": "proj",
                "agent_mode": True,
                "terminal_count": 1,
                "agent_slots": [0],
                "terminal_class": "kitty",
                "cwd": "/src/proj",
            }
        },
        desktop=desktop,
    )

    result = asyncio.run(spawner.spawn(SpawnRequest(agent_type="shell", workspace="proj", window=True)))

    assert result.slot == 1
    assert result.session_name == "termtile-proj-1:0.0"
    assert runner.launched[0][0] == (
        "kitty",
        "--directory",
        "/src/proj",
        "tmux",
        "new-session",
        "-s",
        "termtile-proj-1",
        "-c",
        "/src/proj",
    )
    assert ("send-keys", "-l", "-t", "termtile-proj-1:0.0", "bash") in runner.invocations
    assert workspaces.get("proj").terminal_count == 2
    assert registry.target("proj", 1) == "termtile-proj-1:0.0"
    assert desktop.moves == [(200, 0)]
    assert desktop.retiles == 1


def test_window_spawn_rolls_back_when_session_never_appears(tmp_path: Path) -> None:
    runner = FakeTmuxRunner(handler=tmux_handler(has_session=False))
    spawner, registry, _, workspaces = build(
        tmp_path,
        runner,
        workspaces={"0": {"name": "proj", "terminal_count": 0, "terminal_class": "kitty"}},
    )

    with pytest.raises(SpawnError, match="timeout waiting for tmux session"):
        asyncio.run(spawner.spawn(SpawnRequest(agent_type="shell", workspace="proj", window=True)))

    assert registry.list("proj") == {}
    assert workspaces.get("proj").terminal_count == 0


def test_window_spawn_needs_terminal_template(tmp_path: Path) -> None:
    spawner, *_ = build(
        tmp_path,
        FakeTmuxRunner(handler=tmux_handler()),
        workspaces={"0": {"name": "proj", "terminal_class": "xterm"}},
    )

    with pytest.raises(SpawnError, match="no spawn template for terminal class 'xterm'"):
        asyncio.run(spawner.spawn(SpawnRequest(agent_type="shell", workspace="proj", window=True)))


def test_dependency_output_is_substituted(tmp_path: Path) -> None:
    runner = FakeTmuxRunner(handler=tmux_handler(screen="result: 42"))
    spawner, registry, store, _ = build(tmp_path, runner)
    registry.allocate(DEFAULT_WORKSPACE, "shell", "%1")

    result = asyncio.run(
        spawner.spawn(
            SpawnRequest(
                agent_type="shell",
                workspace=DEFAULT_WORKSPACE,
                task="use {{slot_0.output}}",
                depends_on=[0],
            )
        )
    )

    assert result.slot == 1
    assert store.get(DEFAULT_WORKSPACE, 0).output == "result: 42"
    assert ("split-window", "-t", "%1", "-P", "-F", "#{pane_id}", "bash") in runner.invocations
    assert ("send-keys", "-l", "-t", "%5", "use result: 42") in runner.invocations
