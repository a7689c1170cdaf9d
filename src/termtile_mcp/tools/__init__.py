"""Tool registration for termtile MCP."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from fastmcp import Context, FastMCP

from ..agents import TermtileConfig
from ..artifacts import ArtifactDirectory, ArtifactStore
from ..compactor import compact_window_slots
from ..config import DEFAULT_WORKSPACE, TermtileSettings
from ..deps import DependencyTimeoutError
from ..errors import HookInjectionError, TermtileError
from ..fence import count_close_tags, trim_output, wrap_task_with_fence
from ..hooks import restore_project_file_hooks
from ..idle import IdleDetector
from ..output import clean_output, normalize_read_lines, output_delta, tail_output_lines
from ..pipe import count_close_tags_in_pipe_file, remove_pipe_file
from ..registry import SlotRegistry, TrackedAgent
from ..spawn import SpawnOrchestrator, SpawnRequest
from ..storage import ChromaStore, ChromaUnavailableError
from ..tmux import TmuxError, TmuxRunner, session_name, target_for_session
from ..workspace import (
    Desktop,
    NullDesktop,
    WorkspaceInfo,
    WorkspaceRegistry,
    WorkspaceRegistryError,
    WorkspaceResolver,
    best_effort,
)

FENCE_BASELINE_LINES = 100
READ_PATTERN_TIMEOUT = 30.0
WAIT_IDLE_TIMEOUT = 120.0
WAIT_IDLE_LINES = 100
WAIT_IDLE_POLL = 2.0
RETILE_DELAY = 0.3


@dataclass(slots=True)
class ToolHandles:
    spawn_agent: Any
    send_to_agent: Any
    read_from_agent: Any
    wait_for_idle: Any
    get_artifact: Any
    list_agents: Any
    kill_agent: Any
    move_terminal: Any


def _preview(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + "..."


def _session_of(target: str) -> str:
    return target.split(":", 1)[0]


def _require_slot(slot: int) -> None:
    if slot < 0:
        raise ValueError(f"slot must be >= 0, got {slot}")


def register_tools(
    server: FastMCP,
    *,
    settings: TermtileSettings,
    config: TermtileConfig,
    runner: TmuxRunner,
    registry: SlotRegistry,
    artifacts: ArtifactStore,
    directory: ArtifactDirectory,
    resolver: WorkspaceResolver,
    workspaces: WorkspaceRegistry,
    idle: IdleDetector,
    spawner: SpawnOrchestrator,
    desktop: Desktop | None = None,
    action_log: ChromaStore | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> ToolHandles:
    """Register termtile's MCP tools on the server."""

    desktop = desktop or NullDesktop()
    sleep = sleep or asyncio.sleep

    def _record(action: str, workspace: str, slot: int, details: dict[str, Any]) -> None:
        if action_log is None:
            return
        try:
            action_log.record_action(action=action, workspace=workspace, slot=slot, details=details)
        except (ChromaUnavailableError, ValueError) as exc:
            logger.warning("Action log unavailable", extra={"action": action, "error": str(exc)})

    def _add_text(details: dict[str, Any], key: str, text: str) -> None:
        details[f"{key}_length"] = len(text)
        details[f"{key}_preview"] = _preview(text, settings.action_log_preview_length)
        if settings.action_log_include_content:
            details[key] = text

    def _resolve(workspace: str | None, source_workspace: str | None, tool: str, slot: int) -> str:
        try:
            return resolver.for_read(workspace, source_workspace, tool)
        except TermtileError as exc:
            _record(tool, DEFAULT_WORKSPACE, slot, {"error": str(exc)})
            raise

    def _tracked(workspace: str, slot: int, tool: str) -> TrackedAgent:
        agent = registry.get(workspace, slot)
        if agent is None or not agent.target:
            _record(tool, workspace, slot, {"error": "agent_not_tracked"})
            raise ValueError(f"no agent tracked in workspace {workspace!r} slot {slot}")
        return agent

    def _registry_entry(workspace: str) -> WorkspaceInfo | None:
        try:
            return workspaces.get(workspace)
        except WorkspaceRegistryError as exc:
            logger.warning("Workspace registry unavailable", extra={"error": str(exc)})
            return None

    def _uses_fence(agent_type: str) -> bool:
        agent_config = config.agents.get(agent_type)
        return (
            agent_config is not None
            and agent_config.response_fence
            and agent_config.output_mode != "hooks"
        )

    async def _spawn_agent(
        agent_type: str,
        workspace: str | None = None,
        cwd: str = "",
        task: str = "",
        model: str | None = None,
        window: bool | None = None,
        depends_on: list[int] | None = None,
        depends_on_timeout: float = 0,
        source_workspace: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Spawn an agent into a tmux pane or terminal window."""

        request = SpawnRequest(
            agent_type=agent_type,
            workspace=workspace,
            cwd=cwd,
            task=task,
            model=model,
            window=window,
            depends_on=list(depends_on or []),
            depends_on_timeout=depends_on_timeout,
            source_workspace=source_workspace,
        )
        try:
            result = await spawner.spawn(request)
        except (TermtileError, TmuxError, ValueError) as exc:
            details: dict[str, Any] = {"agent_type": agent_type, "error": str(exc)}
            if isinstance(exc, DependencyTimeoutError):
                details["depends_on_timeout"] = exc.timeout
                details["outstanding"] = exc.slots
            _record("spawn_agent", (workspace or "").strip() or DEFAULT_WORKSPACE, -1, details)
            await _emit_log(context, "error", "Spawn failed", extra=details)
            raise

        details = {
            "agent_type": agent_type,
            "spawn_mode": result.spawn_mode,
            "session_name": result.session_name,
            "model": result.model,
            "prompt_as_arg": result.prompt_as_arg,
            "pipe_task": result.pipe_task,
            "depends_on_count": len(request.depends_on),
        }
        if task:
            _add_text(details, "task", task)
        _record("spawn_agent", result.workspace, result.slot, details)
        await _emit_log(
            context,
            "info",
            "Spawned agent",
            extra={"workspace": result.workspace, "slot": result.slot, "agent_type": agent_type},
        )
        return result.to_dict()

    async def _send_to_agent(
        slot: int,
        text: str,
        workspace: str | None = None,
        source_workspace: str | None = None,
        context: Context | None = None,
    ) -> str:
        """Type text into an agent's terminal and press Enter."""

        _require_slot(slot)
        workspace_name = _resolve(workspace, source_workspace, "send_to_agent", slot)
        agent = _tracked(workspace_name, slot, "send_to_agent")

        text_to_send = text
        fence = bool(text) and _uses_fence(agent.agent_type)
        if fence:
            baseline = 0
            if agent.pipe_path:
                try:
                    baseline, size = count_close_tags_in_pipe_file(agent.pipe_path)
                except OSError as exc:
                    logger.debug("Pipe file unreadable", extra={"slot": slot, "error": str(exc)})
                else:
                    registry.update_pipe_size(workspace_name, slot, size)
            else:
                try:
                    baseline = count_close_tags(await runner.capture_pane(agent.target, FENCE_BASELINE_LINES))
                except TmuxError as exc:
                    logger.debug("Baseline capture failed", extra={"slot": slot, "error": str(exc)})
            registry.update_fence_state(workspace_name, slot, True, baseline)
            text_to_send = wrap_task_with_fence(text)

        if text:
            try:
                directory.clean_stale_output(workspace_name, slot)
            except OSError as exc:
                logger.warning("Failed to clear previous output", extra={"slot": slot, "error": str(exc)})

        details: dict[str, Any] = {
            "agent_type": agent.agent_type,
            "response_fence": fence,
            "sent_length": len(text_to_send),
        }
        _add_text(details, "text", text)
        try:
            await runner.send_keys(agent.target, text_to_send)
        except TmuxError as exc:
            details["error"] = "send_failed"
            _record("send_to_agent", workspace_name, slot, details)
            raise RuntimeError(f"failed to send to slot {slot} (target {agent.target}): {exc}") from exc

        _record("send_to_agent", workspace_name, slot, details)
        await _emit_log(context, "debug", "Sent text to agent", extra={"workspace": workspace_name, "slot": slot})
        return f"Sent to slot {slot} (target {agent.target})"

    async def _read_from_agent(
        slot: int,
        lines: int = 0,
        clean: bool = False,
        workspace: str | None = None,
        pattern: str = "",
        timeout: float = 0,
        since_last: bool = False,
        source_workspace: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Read recent terminal output, optionally waiting for a pattern."""

        _require_slot(slot)
        workspace_name = _resolve(workspace, source_workspace, "read_from_agent", slot)
        agent = _tracked(workspace_name, slot, "read_from_agent")
        effective_lines = normalize_read_lines(lines)

        def _process(raw: str) -> str:
            output = clean_output(raw) if clean else raw
            output = tail_output_lines(output, effective_lines)
            previous = registry.get_snapshot(workspace_name, slot)
            registry.set_snapshot(workspace_name, slot, output)
            return output_delta(previous, output) if since_last else output

        details: dict[str, Any] = {
            "agent_type": agent.agent_type,
            "lines_requested": lines,
            "lines_effective": effective_lines,
            "clean": clean,
            "since_last": since_last,
        }

        if pattern:
            wait_seconds = timeout if timeout > 0 else READ_PATTERN_TIMEOUT
            try:
                raw, found = await runner.wait_for(
                    agent.target, pattern, timeout=wait_seconds, lines=effective_lines, clock=clock
                )
            except TmuxError as exc:
                logger.debug("Pattern wait failed", extra={"slot": slot, "error": str(exc)})
                raw, found = "", False
            output = _process(raw)
            details.update({"pattern": pattern, "timeout_seconds": wait_seconds, "found": found})
            _add_text(details, "output", output)
            _record("read_from_agent", workspace_name, slot, details)
            return {"output": output, "session_name": agent.target, "found": found}

        try:
            raw = await runner.capture_pane(agent.target, effective_lines)
        except TmuxError as exc:
            details["error"] = "capture_failed"
            _record("read_from_agent", workspace_name, slot, details)
            raise RuntimeError(f"failed to read from slot {slot} (target {agent.target}): {exc}") from exc

        output = _process(raw)
        _add_text(details, "output", output)
        _record("read_from_agent", workspace_name, slot, details)
        await _emit_log(context, "debug", "Read agent output", extra={"workspace": workspace_name, "slot": slot})
        return {"output": output, "session_name": agent.target}

    async def _idle_output(workspace_name: str, slot: int, agent: TrackedAgent, lines: int) -> str:
        if agent.response_fence:
            stored = artifacts.get(workspace_name, slot)
            if stored is not None:
                return stored.output
        try:
            raw = await runner.capture_pane(agent.target, 0 if agent.response_fence else lines)
        except TmuxError as exc:
            logger.debug("Idle output capture failed", extra={"slot": slot, "error": str(exc)})
            return ""
        return trim_output(clean_output(raw), agent.response_fence)

    async def _wait_for_idle(
        slot: int,
        timeout: float = 0,
        lines: int = 0,
        workspace: str | None = None,
        source_workspace: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Block until the agent finishes its turn or the timeout passes."""

        _require_slot(slot)
        workspace_name = _resolve(workspace, source_workspace, "wait_for_idle", slot)
        agent = _tracked(workspace_name, slot, "wait_for_idle")
        wait_seconds = timeout if timeout > 0 else WAIT_IDLE_TIMEOUT
        capture_lines = lines if lines > 0 else WAIT_IDLE_LINES

        started = clock()
        deadline = started + wait_seconds
        details: dict[str, Any] = {
            "agent_type": agent.agent_type,
            "lines": capture_lines,
            "timeout_seconds": wait_seconds,
        }
        while True:
            hook = directory.read_output(workspace_name, slot)
            if hook.ready:
                output, source = hook.output, "hooks"
                break
            if await idle.check(workspace_name, slot):
                current = registry.get(workspace_name, slot) or agent
                output, source = await _idle_output(workspace_name, slot, current, capture_lines), "detector"
                break
            remaining = deadline - clock()
            if remaining <= 0:
                details.update(
                    {"is_idle": False, "elapsed_seconds": round(clock() - started, 3), "error": "idle_timeout"}
                )
                _record("wait_for_idle", workspace_name, slot, details)
                return {"is_idle": False, "output": "", "session_name": agent.target}
            await sleep(min(WAIT_IDLE_POLL, remaining))

        details.update({"is_idle": True, "source": source, "elapsed_seconds": round(clock() - started, 3)})
        _add_text(details, "output", output)
        _record("wait_for_idle", workspace_name, slot, details)
        await _emit_log(
            context, "info", "Agent idle", extra={"workspace": workspace_name, "slot": slot, "source": source}
        )
        return {"is_idle": True, "output": output, "session_name": agent.target}

    def _get_artifact(
        slot: int,
        workspace: str | None = None,
        source_workspace: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return the latest captured output for a slot."""

        _require_slot(slot)
        workspace_name = resolver.for_read(workspace, source_workspace, "get_artifact")
        stored = artifacts.get(workspace_name, slot)
        if stored is not None:
            return stored.to_dict()

        if not directory.output_path(workspace_name, slot).exists():
            raise ValueError(f"no artifact for workspace {workspace_name!r} slot {slot}")
        hook = directory.read_output(workspace_name, slot)
        if not hook.ready:
            raise ValueError(
                f"invalid artifact payload for workspace {workspace_name!r} slot {slot}: {hook.reason}"
            )
        size = len(hook.output.encode("utf-8"))
        return {
            "workspace": workspace_name,
            "slot": slot,
            "output": hook.output,
            "truncated": False,
            "warning": None,
            "original_bytes": size,
            "stored_bytes": size,
            "last_updated": hook.modified_at.isoformat() if hook.modified_at else None,
        }

    async def _list_agents(
        workspace: str | None = None,
        source_workspace: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """List tracked agents in a workspace with liveness and idle state."""

        workspace_name = resolver.for_read(workspace, source_workspace, "list_agents")
        entries: list[dict[str, Any]] = []
        for slot, agent in sorted(registry.list(workspace_name).items()):
            entry: dict[str, Any] = {
                "slot": slot,
                "agent_type": agent.agent_type,
                "session_name": agent.target,
                "current_command": "",
                "is_idle": False,
                "exists": True,
                "spawn_mode": agent.spawn_mode,
            }
            try:
                entry["current_command"] = await runner.current_command(agent.target)
            except TmuxError:
                entry["exists"] = False
            else:
                entry["is_idle"] = await idle.check(workspace_name, slot)
            entries.append(entry)

        _record(
            "list_agents",
            workspace_name,
            -1,
            {
                "agent_count": len(entries),
                "idle_count": sum(1 for entry in entries if entry["exists"] and entry["is_idle"]),
                "missing_count": sum(1 for entry in entries if not entry["exists"]),
            },
        )
        await _emit_log(context, "debug", "Listed agents", extra={"workspace": workspace_name, "count": len(entries)})
        return {"workspace": workspace_name, "agents": entries}

    async def _kill_agent(
        slot: int,
        workspace: str | None = None,
        source_workspace: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Terminate an agent and stop tracking its slot."""

        _require_slot(slot)
        workspace_name = _resolve(workspace, source_workspace, "kill_agent", slot)
        if slot == 0 and config.agent_mode.protect_slot_zero and resolver.is_agent_mode(workspace_name):
            _record("kill_agent", workspace_name, slot, {"killed": False, "error": "slot_zero_protected"})
            raise ValueError(
                f"slot 0 is protected in agent-mode workspace {workspace_name!r} (this is typically the "
                "orchestrating agent); set agent_mode.protect_slot_zero: false in config to disable"
            )
        agent = _tracked(workspace_name, slot, "kill_agent")

        try:
            restore_project_file_hooks(directory, workspace_name, slot)
        except HookInjectionError as exc:
            logger.warning(
                "Failed to restore project hooks",
                extra={"workspace": workspace_name, "slot": slot, "error": str(exc)},
            )

        if agent.pipe_path:
            try:
                await runner.stop_pipe(agent.target)
            except TmuxError as exc:
                logger.debug("pipe-pane stop failed", extra={"slot": slot, "error": str(exc)})
            remove_pipe_file(agent.pipe_path)

        try:
            if agent.spawn_mode == "window":
                await runner.kill_session(_session_of(agent.target))
            else:
                await runner.kill_pane(agent.target)
        except TmuxError as exc:
            logger.debug("tmux kill failed", extra={"target": agent.target, "error": str(exc)})

        registry.remove(workspace_name, slot)
        try:
            directory.cleanup(workspace_name, slot)
        except OSError as exc:
            logger.warning(
                "Failed to clean artifact directory",
                extra={"workspace": workspace_name, "slot": slot, "error": str(exc)},
            )

        if agent.spawn_mode == "window":
            info = _registry_entry(workspace_name)
            if info is not None:
                try:
                    workspaces.remove_terminal(info.desktop, slot)
                except WorkspaceRegistryError as exc:
                    logger.warning(
                        "Failed to remove slot from workspace registry",
                        extra={"workspace": workspace_name, "slot": slot, "error": str(exc)},
                    )
                else:
                    await compact_window_slots(runner, registry, directory, workspace_name, slot)
            await sleep(RETILE_DELAY)
            best_effort("re-tile", desktop.retile)
        else:
            remaining = await spawner.any_pane_mode_target(workspace_name)
            if remaining:
                await runner.select_layout(remaining, "tiled")

        _record(
            "kill_agent",
            workspace_name,
            slot,
            {
                "agent_type": agent.agent_type,
                "spawn_mode": agent.spawn_mode,
                "session_name": agent.target,
                "killed": True,
            },
        )
        await _emit_log(context, "info", "Killed agent", extra={"workspace": workspace_name, "slot": slot})
        return {"session_name": agent.target, "killed": True}

    async def _move_terminal(
        slot: int,
        target_workspace: str,
        workspace: str | None = None,
        source_workspace: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Move an agent terminal to another workspace."""

        _require_slot(slot)
        src_workspace = _resolve(workspace, source_workspace, "move_terminal", slot)
        dst_workspace = (target_workspace or "").strip()
        if not dst_workspace:
            raise ValueError("target_workspace is required")
        if src_workspace == dst_workspace:
            raise ValueError(f"source and target workspaces are the same ({src_workspace!r})")
        agent = _tracked(src_workspace, slot, "move_terminal")

        src_info = _registry_entry(src_workspace)
        if src_info is None:
            raise ValueError(f"source workspace {src_workspace!r} not found in registry")
        dst_info = _registry_entry(dst_workspace)
        if dst_info is None:
            raise ValueError(f"target workspace {dst_workspace!r} not found in registry")

        old_session = _session_of(agent.target)
        if agent.spawn_mode == "window" and src_info.desktop != dst_info.desktop:
            window_id = best_effort("find window", desktop.find_window, old_session)
            if window_id:
                best_effort("move window to desktop", desktop.move_window_to_desktop, window_id, dst_info.desktop)

        try:
            new_slot = workspaces.move_terminal(src_info.desktop, slot, dst_info.desktop)
        except WorkspaceRegistryError as exc:
            raise RuntimeError(f"failed to update workspace registry: {exc}") from exc

        try:
            directory.move(src_workspace, slot, dst_workspace, new_slot)
        except OSError as exc:
            logger.warning(
                "Failed to move artifact directory",
                extra={"workspace": src_workspace, "slot": slot, "target_slot": new_slot, "error": str(exc)},
            )

        new_session = session_name(dst_workspace, new_slot)
        new_target = target_for_session(new_session)
        try:
            await runner.rename_session(old_session, new_session)
        except TmuxError as exc:
            logger.warning(
                "Failed to rename moved session",
                extra={"old": old_session, "new": new_session, "error": str(exc)},
            )

        registry.relocate(src_workspace, slot, dst_workspace, new_slot, target=new_target)
        if agent.spawn_mode == "window":
            await compact_window_slots(runner, registry, directory, src_workspace, slot)

        await sleep(RETILE_DELAY)
        best_effort("re-tile", desktop.retile)

        _record(
            "move_terminal",
            src_workspace,
            slot,
            {
                "agent_type": agent.agent_type,
                "spawn_mode": agent.spawn_mode,
                "target_workspace": dst_workspace,
                "target_slot": new_slot,
                "old_session": old_session,
                "new_session": new_session,
            },
        )
        await _emit_log(
            context,
            "info",
            "Moved terminal",
            extra={"workspace": src_workspace, "slot": slot, "target_workspace": dst_workspace},
        )
        return {
            "source_workspace": src_workspace,
            "target_workspace": dst_workspace,
            "source_slot": slot,
            "target_slot": new_slot,
            "session_name": new_target,
            "moved": True,
        }

    tool_spawn = server.tool(
        name="spawn_agent",
        description=(
            "Spawn an AI coding agent in a tmux pane (default) or a tiled terminal window. "
            "Optionally send an initial task, pick a model, and wait for dependency slots "
            "(depends_on) to go idle first; {{slot_N.output}} in the task is replaced with "
            "that slot's output. Returns the slot number and tmux target."
        ),
    )(_spawn_agent)

    tool_send = server.tool(
        name="send_to_agent",
        description="Send text to the agent in a slot. Fence-enabled agents get the response-fence instruction appended.",
    )(_send_to_agent)

    tool_read = server.tool(
        name="read_from_agent",
        description=(
            "Read the last lines (default 50, max 100) of an agent's terminal. With pattern, poll "
            "until it appears or timeout seconds pass; since_last returns only new output."
        ),
    )(_read_from_agent)

    tool_wait = server.tool(
        name="wait_for_idle",
        description=(
            "Wait until an agent finishes its turn, returning its final output. "
            "Returns is_idle=false on timeout instead of failing."
        ),
    )(_wait_for_idle)

    tool_artifact = server.tool(
        name="get_artifact",
        description="Fetch the captured output artifact for a slot.",
    )(_get_artifact)

    tool_list = server.tool(
        name="list_agents",
        description="List tracked agents in a workspace with their current command and idle state.",
    )(_list_agents)

    tool_kill = server.tool(
        name="kill_agent",
        description="Kill an agent's pane or window and stop tracking it. Slot 0 of agent-mode workspaces is protected.",
        annotations={"destructiveHint": True},
    )(_kill_agent)

    tool_move = server.tool(
        name="move_terminal",
        description="Move an agent terminal into another registered workspace.",
    )(_move_terminal)

    return ToolHandles(
        spawn_agent=tool_spawn,
        send_to_agent=tool_send,
        read_from_agent=tool_read,
        wait_for_idle=tool_wait,
        get_artifact=tool_artifact,
        list_agents=tool_list,
        kill_agent=tool_kill,
        move_terminal=tool_move,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


async def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        log_method = getattr(context, level, None)
        if callable(log_method):
            try:
                result = log_method(message, extra=payload)
                if inspect.isawaitable(result):
                    await result
                return
            except (TypeError, RuntimeError):
                # Context outside an active request; use the module logger.
                pass

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
