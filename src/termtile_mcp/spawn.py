"""Spawn agents into tmux panes or dedicated terminal windows."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from .agents import AgentConfig, TermtileConfig
from .artifacts import ArtifactDirectory, ArtifactStore, substitute_slot_output_templates
from .config import DEFAULT_WORKSPACE
from .deps import DependencyScheduler
from .errors import HookInjectionError, SlotOccupiedError, SpawnError
from .fence import wrap_task_with_fence
from .hooks import file_write_instructions, inject_project_file_hooks, render_hook_settings, resolve_hooks
from .hooks.render import DEFAULT_HOOK_COMMAND
from .pipe import count_close_tags_in_pipe_file, create_pipe_file, pipe_file_path
from .registry import SlotRegistry
from .tmux import TmuxError, TmuxRunner, session_name, shell_quote, target_for_session
from .tmux.utils import render_spawn_template
from .workspace import (
    Desktop,
    NullDesktop,
    WorkspaceInfo,
    WorkspaceRegistry,
    WorkspaceRegistryError,
    WorkspaceResolver,
    best_effort,
)

logger = logging.getLogger(__name__)

MAX_EMBEDDED_TASK_BYTES = 32 * 1024
STABLE_REPEATS = 2
SHELL_SAMPLE_LINES = 10
SHELL_POLL_INTERVAL = 0.3
SHELL_READY_TIMEOUT = 10.0
READY_TIMEOUT = 30.0
READY_PATTERN_LINES = 50
TUI_SAMPLE_LINES = 30
TUI_POLL_INTERVAL = 0.5
TUI_SETTLE_DELAY = 2.0
SESSION_APPEAR_TIMEOUT = 15.0
SESSION_POLL_INTERVAL = 0.25
WINDOW_SETTLE_DELAY = 0.5
PIPE_SETTLE_DELAY = 3.0
FOLLOWUP_DELAY = 3.0


@dataclass(slots=True)
class SpawnRequest:
    agent_type: str
    workspace: str | None = None
    cwd: str = ""
    task: str = ""
    model: str | None = None
    window: bool | None = None
    depends_on: list[int] = field(default_factory=list)
    depends_on_timeout: float = 0
    source_workspace: str | None = None


@dataclass(slots=True)
class SpawnResult:
    slot: int
    session_name: str
    agent_type: str
    workspace: str
    spawn_mode: str
    model: str = ""
    prompt_as_arg: bool = False
    pipe_task: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot": self.slot,
            "session_name": self.session_name,
            "agent_type": self.agent_type,
            "workspace": self.workspace,
            "spawn_mode": self.spawn_mode,
        }


@dataclass(slots=True)
class AgentLaunch:
    """The shell command for an agent plus how its task reaches it."""

    command: str
    task: str
    fence: bool
    prompt_in_cmd: bool = False
    pipe_in_cmd: bool = False
    needs_file_write_instructions: bool = False
    project_settings: str | None = None
    project_cwd: str = ""
    context_task: str = ""
    model: str = ""

    @property
    def embedded(self) -> bool:
        return self.prompt_in_cmd or self.pipe_in_cmd


def resolve_spawn_mode(window: bool | None, agent_spawn_mode: str) -> str:
    """Explicit ``window`` flag first, then the agent's preference, then pane."""

    if window is not None:
        return "window" if window else "pane"
    return "window" if agent_spawn_mode == "window" else "pane"


class SpawnOrchestrator:
    """Creates agent terminals and hands them their first task."""

    def __init__(
        self,
        runner: TmuxRunner,
        registry: SlotRegistry,
        config: TermtileConfig,
        *,
        artifacts: ArtifactStore,
        directory: ArtifactDirectory,
        resolver: WorkspaceResolver,
        workspaces: WorkspaceRegistry,
        scheduler: DependencyScheduler,
        pipe_dir: Path,
        desktop: Desktop | None = None,
        hook_command: str = DEFAULT_HOOK_COMMAND,
        home: Callable[[], Path] = Path.home,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._runner = runner
        self._registry = registry
        self._config = config
        self._artifacts = artifacts
        self._directory = directory
        self._resolver = resolver
        self._workspaces = workspaces
        self._scheduler = scheduler
        self._pipe_dir = Path(pipe_dir)
        self._desktop = desktop or NullDesktop()
        self._hook_command = hook_command
        self._home = home
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self._background: set[asyncio.Task[None]] = set()

    async def spawn(self, request: SpawnRequest) -> SpawnResult:
        agent = self._config.agents.get(request.agent_type)
        if agent is None:
            available = sorted(self._config.agents)
            raise ValueError(f"unknown agent type {request.agent_type!r}; available: {available}")

        spawn_mode = resolve_spawn_mode(request.window, agent.spawn_mode)
        workspace = self._resolver.for_spawn(request.workspace, request.source_workspace)

        task = request.task
        if request.depends_on:
            slots = await self._scheduler.wait(workspace, request.depends_on, request.depends_on_timeout)
            await self._scheduler.ensure_artifacts(
                workspace, slots, store=self._artifacts, directory=self._directory
            )
            if task:
                task, missing = substitute_slot_output_templates(
                    task, workspace, slots, store=self._artifacts, directory=self._directory
                )
                if missing:
                    logger.warning(
                        "Missing artifacts for dependency slots",
                        extra={"workspace": workspace, "slots": missing},
                    )

        launch = self.build_launch(workspace, request, agent, task, spawn_mode)

        if spawn_mode == "window":
            target, slot = await self.spawn_window(
                workspace, request.agent_type, request.cwd, launch.fence, agent
            )
            self._prepare_artifact_dir(workspace, slot)
            if launch.project_settings is not None:
                self._inject_project_hooks(workspace, slot, agent, launch)
            await self.wait_for_shell_and_send(target, launch.command)
        else:
            target, slot = await self.spawn_pane(
                workspace, request.agent_type, launch.command, request.cwd, launch.fence, agent
            )
            self._prepare_artifact_dir(workspace, slot)

        try:
            self._directory.write_agent_meta(workspace, slot, request.agent_type)
        except OSError as exc:
            logger.warning("Failed to write agent meta", extra={"slot": slot, "error": str(exc)})

        if task and not launch.embedded:
            text = launch.task
            if launch.needs_file_write_instructions:
                text += file_write_instructions(self._directory, workspace, slot)
            await self.wait_and_send_task(target, request.agent_type, text, agent)
        elif launch.needs_file_write_instructions:
            self._schedule_followup(target, slot, file_write_instructions(self._directory, workspace, slot))

        if launch.fence:
            await self.start_fence_pipe(workspace, slot, target)

        return SpawnResult(
            slot=slot,
            session_name=target,
            agent_type=request.agent_type,
            workspace=workspace,
            spawn_mode=spawn_mode,
            model=launch.model,
            prompt_as_arg=launch.prompt_in_cmd,
            pipe_task=launch.pipe_in_cmd,
        )

    def build_launch(
        self,
        workspace: str,
        request: SpawnRequest,
        agent: AgentConfig,
        task: str,
        spawn_mode: str,
    ) -> AgentLaunch:
        """Assemble the agent command line and decide how the task is delivered.

        Project-file hook delivery needs the slot before the agent command runs,
        which only window mode provides; pane spawns fall back to asking the
        agent to write ``output.json`` itself.
        """

        fence = agent.response_fence and bool(task) and agent.output_mode != "hooks"
        task_to_send = wrap_task_with_fence(task) if task and fence else task

        parts = [agent.command, *agent.args]
        model = (request.model or "").strip() or agent.default_model.strip()
        if model:
            if agent.models and model not in {known.strip() for known in agent.models}:
                logger.warning(
                    "Unknown model for agent",
                    extra={"model": model, "agent_type": request.agent_type, "models": agent.models},
                )
            parts.extend([agent.model_flag.strip() or "--model", shell_quote(model)])

        launch = AgentLaunch(command="", task=task_to_send, fence=fence, model=model)
        if agent.output_mode == "hooks":
            settings = render_hook_settings(agent, resolve_hooks(agent, self._hook_command))
            if settings and agent.hook_delivery == "cli_flag":
                flag = agent.hook_settings_flag.strip()
                if flag:
                    parts.extend([flag, shell_quote(settings)])
            elif settings and agent.hook_delivery == "project_file" and spawn_mode == "window":
                launch.project_settings = settings
                launch.project_cwd = self._project_file_cwd(workspace, request.cwd)
                launch.context_task = task_to_send
                if task_to_send:
                    launch.task = "start"
            elif task:
                launch.needs_file_write_instructions = True

        fits = len(launch.task.encode("utf-8")) <= MAX_EMBEDDED_TASK_BYTES
        launch.prompt_in_cmd = agent.prompt_as_arg and bool(task) and fits
        if launch.prompt_in_cmd:
            prompt_flag = agent.prompt_flag.strip()
            if prompt_flag:
                parts.append(prompt_flag)
            parts.append(shell_quote(launch.task))
        launch.pipe_in_cmd = agent.pipe_task and bool(task) and not launch.prompt_in_cmd and fits

        launch.command = " ".join(parts)
        if launch.pipe_in_cmd:
            launch.command = f"printf '%s\\n' {shell_quote(launch.task)} | {launch.command}"
        return launch

    def _workspace_info(self, workspace: str) -> WorkspaceInfo | None:
        try:
            return self._workspaces.get(workspace)
        except WorkspaceRegistryError as exc:
            logger.warning("Workspace registry unavailable", extra={"error": str(exc)})
            return None

    def _project_file_cwd(self, workspace: str, cwd: str) -> str:
        if cwd.strip():
            return cwd.strip()
        root = self._resolver.project_root()
        if root is not None:
            return str(root)
        info = self._workspace_info(workspace)
        if info is not None and info.cwd:
            return info.cwd
        return str(self._home())

    def _prepare_artifact_dir(self, workspace: str, slot: int) -> None:
        try:
            self._directory.ensure(workspace, slot)
            self._directory.clean_stale_output(workspace, slot)
        except OSError as exc:
            logger.warning(
                "Failed to prepare artifact directory",
                extra={"workspace": workspace, "slot": slot, "error": str(exc)},
            )

    def _inject_project_hooks(self, workspace: str, slot: int, agent: AgentConfig, launch: AgentLaunch) -> None:
        try:
            inject_project_file_hooks(
                self._directory, workspace, slot, launch.project_cwd, agent, launch.project_settings or ""
            )
            if launch.context_task:
                self._directory.write_context(workspace, slot, launch.context_task)
        except (HookInjectionError, OSError) as exc:
            logger.warning(
                "Project hook injection failed",
                extra={"workspace": workspace, "slot": slot, "error": str(exc)},
            )

    async def any_pane_mode_target(self, workspace: str) -> str | None:
        """Return a live pane-mode target in ``workspace``, pruning dead ones."""

        for slot, agent in sorted(self._registry.list(workspace).items()):
            if agent.spawn_mode != "pane" or not agent.target:
                continue
            if await self._runner.target_exists(agent.target):
                return agent.target
            logger.info("Pruning dead pane target", extra={"workspace": workspace, "slot": slot})
            self._registry.remove(workspace, slot)
        return None

    async def spawn_pane(
        self,
        workspace: str,
        agent_type: str,
        command: str,
        cwd: str,
        fence: bool,
        agent: AgentConfig,
    ) -> tuple[str, int]:
        split_target = await self.any_pane_mode_target(workspace)
        if split_target is None:
            split_target = await self._runner.attached_session()
            if not split_target:
                raise SpawnError("no attached tmux session found; please open a tmux terminal first")

        try:
            pane = await self._runner.split_window(split_target, command, cwd=cwd or None, env=agent.env)
        except TmuxError as exc:
            raise SpawnError(f"failed to create tmux pane: {exc}") from exc
        await self._runner.select_layout(pane, "tiled")

        slot = self._registry.allocate(workspace, agent_type, pane, "pane", response_fence=fence)
        return pane, slot

    async def spawn_window(
        self,
        workspace: str,
        agent_type: str,
        cwd: str,
        fence: bool,
        agent: AgentConfig,
    ) -> tuple[str, int]:
        previous_focus = best_effort("read active window", self._desktop.active_window)
        info = self._workspace_info(workspace)

        terminal_class = (info.terminal_class if info else None) or self._config.preferred_terminal.strip()
        if not terminal_class:
            raise SpawnError(
                "no terminal emulator found; configure preferred_terminal or install a supported terminal"
            )
        template = self._config.lookup_spawn_template(terminal_class)
        if template is None:
            raise SpawnError(
                f"no spawn template for terminal class {terminal_class!r}; add it to terminal_spawn_commands"
            )

        registry_desktop: int | None = None
        if info is not None:
            try:
                slot = self._workspaces.add_terminal(info.desktop)
            except WorkspaceRegistryError as exc:
                raise SpawnError(f"failed to update workspace terminal registry for {workspace!r}: {exc}") from exc
            registry_desktop = info.desktop
            try:
                self._registry.track_at(workspace, slot, agent_type, "", "window", response_fence=fence)
            except SlotOccupiedError as exc:
                self._release_registry_slot(workspace, registry_desktop, slot)
                raise SpawnError(f"failed to track slot {slot} for workspace {workspace!r}: {exc}") from exc
        elif workspace != DEFAULT_WORKSPACE:
            raise SpawnError(f"workspace {workspace!r} not found in registry")
        else:
            slot = self._registry.allocate(workspace, agent_type, "", "window", response_fence=fence)

        name = session_name(workspace, slot)
        target = target_for_session(name)
        self._registry.update_target(workspace, slot, target)

        launched = False
        try:
            directory = cwd.strip()
            if not directory:
                root = self._resolver.project_root()
                directory = str(root) if root is not None else ""
            if not directory:
                directory = (info.cwd if info else None) or str(self._home())

            tmux_command = f"tmux new-session -s {shell_quote(name)} -c {shell_quote(directory)}"
            try:
                argv = render_spawn_template(template, directory, tmux_command)
            except ValueError as exc:
                raise SpawnError(f"failed to render spawn template: {exc}") from exc
            if not argv:
                raise SpawnError("spawn template produced empty command")

            try:
                await self._runner.launch(argv, env=agent.env)
            except (OSError, TmuxError) as exc:
                raise SpawnError(f"failed to spawn terminal window: {exc}") from exc
            await self._wait_for_session(name)
            launched = True
        finally:
            if not launched:
                self._registry.remove(workspace, slot)
                if registry_desktop is not None:
                    self._release_registry_slot(workspace, registry_desktop, slot)

        await self._sleep(WINDOW_SETTLE_DELAY)
        window_id = best_effort("find spawned window", self._desktop.find_window, name)
        if registry_desktop is not None and window_id:
            current = best_effort("read current desktop", self._desktop.current_desktop)
            if current is not None and current != registry_desktop:
                best_effort(
                    "move window to workspace desktop",
                    self._desktop.move_window_to_desktop,
                    window_id,
                    registry_desktop,
                )
        if previous_focus and window_id and previous_focus != window_id:
            if best_effort("read active window", self._desktop.active_window) == window_id:
                best_effort("restore focus", self._desktop.focus_window, previous_focus)
        best_effort("re-tile", self._desktop.retile)
        return target, slot

    def _release_registry_slot(self, workspace: str, desktop: int, slot: int) -> None:
        try:
            self._workspaces.remove_terminal(desktop, slot)
        except WorkspaceRegistryError as exc:
            logger.warning(
                "Failed to roll back workspace terminal registry",
                extra={"workspace": workspace, "slot": slot, "error": str(exc)},
            )

    async def _wait_for_session(self, name: str) -> None:
        deadline = self._clock() + SESSION_APPEAR_TIMEOUT
        while True:
            if await self._runner.has_session(name):
                return
            if self._clock() >= deadline:
                raise SpawnError(f"timeout waiting for tmux session {name!r} to appear")
            await self._sleep(SESSION_POLL_INTERVAL)

    async def _wait_until_stable(self, target: str, lines: int, interval: float, timeout: float) -> None:
        deadline = self._clock() + timeout
        last = ""
        repeats = 0
        while self._clock() < deadline:
            try:
                output = await self._runner.capture_pane(target, lines)
            except TmuxError:
                await self._sleep(interval)
                continue
            trimmed = output.strip()
            if not trimmed:
                await self._sleep(interval)
                continue
            if trimmed == last:
                repeats += 1
                if repeats >= STABLE_REPEATS:
                    return
            else:
                repeats = 0
            last = trimmed
            await self._sleep(interval)

    async def _clear_and_send(self, target: str, text: str, what: str) -> None:
        try:
            await self._runner.clear_input_line(target)
        except TmuxError as exc:
            logger.warning("Failed to clear input line", extra={"target": target, "error": str(exc)})
        try:
            await self._runner.send_keys(target, text)
        except TmuxError as exc:
            logger.warning(f"Failed to send {what}", extra={"target": target, "error": str(exc)})

    async def wait_for_shell_and_send(self, target: str, command: str) -> None:
        """Let the login shell finish starting, then type the agent command."""

        await self._wait_until_stable(target, SHELL_SAMPLE_LINES, SHELL_POLL_INTERVAL, SHELL_READY_TIMEOUT)
        await self._clear_and_send(target, command, "agent command")

    async def wait_and_send_task(self, target: str, agent_type: str, task: str, agent: AgentConfig) -> None:
        """Wait for the agent to accept input, then type ``task``."""

        if agent.ready_pattern:
            _, found = await self._runner.wait_for(
                target,
                agent.ready_pattern,
                timeout=READY_TIMEOUT,
                lines=READY_PATTERN_LINES,
                clock=self._clock,
            )
            if not found:
                logger.warning(
                    "Agent not ready before timeout; sending task anyway",
                    extra={"agent_type": agent_type, "target": target},
                )
        else:
            await self._wait_until_stable(target, TUI_SAMPLE_LINES, TUI_POLL_INTERVAL, READY_TIMEOUT)
            await self._sleep(TUI_SETTLE_DELAY)
        await self._clear_and_send(target, task, "initial task")

    def _schedule_followup(self, target: str, slot: int, text: str) -> None:
        task = asyncio.get_running_loop().create_task(self._send_followup(target, slot, text))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_followup(self, target: str, slot: int, text: str) -> None:
        await self._sleep(FOLLOWUP_DELAY)
        try:
            await self._runner.send_keys(target, text)
        except TmuxError as exc:
            logger.warning(
                "Failed to send file-write instructions", extra={"slot": slot, "error": str(exc)}
            )

    async def start_fence_pipe(self, workspace: str, slot: int, target: str) -> None:
        """Stream the pane into a pipe file and record the post-echo close-marker baseline."""

        path = pipe_file_path(self._pipe_dir, workspace, slot)
        try:
            create_pipe_file(path)
        except OSError as exc:
            logger.warning("Failed to create pipe file", extra={"path": str(path), "error": str(exc)})
        try:
            await self._runner.start_pipe(target, path)
        except TmuxError as exc:
            logger.warning("pipe-pane failed", extra={"slot": slot, "error": str(exc)})
            return
        self._registry.set_pipe_state(workspace, slot, str(path))
        await self._sleep(PIPE_SETTLE_DELAY)
        try:
            count, size = count_close_tags_in_pipe_file(path)
        except OSError:
            return
        self._registry.update_fence_state(workspace, slot, True, count)
        self._registry.update_pipe_size(workspace, slot, size)


__all__ = [
    "AgentLaunch",
    "SpawnOrchestrator",
    "SpawnRequest",
    "SpawnResult",
    "resolve_spawn_mode",
]
