"""FastMCP server bootstrap for termtile."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .agents import ConfigLoader, TermtileConfig
from .artifacts import ArtifactDirectory, ArtifactStore
from .config import DEFAULT_WORKSPACE, TermtileSettings, get_settings
from .deps import DependencyScheduler
from .hooks import reconcile_hook_file_state
from .idle import IdleDetector
from .pipe import clean_stale_pipe_files
from .registry import SlotRegistry, TrackedAgent
from .spawn import SpawnOrchestrator
from .storage import ChromaStore, ChromaUnavailableError
from .tmux import TmuxNotFoundError, TmuxRunner, parse_session_name, target_for_session
from .tools import register_tools
from .workspace import (
    Desktop,
    JsonWorkspaceRegistry,
    WorkspaceRegistry,
    WorkspaceRegistryError,
    WorkspaceResolver,
)

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the termtile server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def reconcile_sessions(
    runner: TmuxRunner,
    registry: SlotRegistry,
    workspaces: WorkspaceRegistry,
    directory: ArtifactDirectory,
    pipe_dir: Path,
) -> dict[str, Any]:
    """Re-adopt orphaned agent sessions left by a previous server process.

    Sessions the workspace registry already records belong to the tiling
    daemon and are skipped. Afterwards, pipe files and project hook injections
    with no live owner are cleaned up.
    """

    sessions = await runner.list_sessions()
    adopted: list[dict[str, Any]] = []
    for name in sessions:
        parsed = parse_session_name(name)
        if parsed is None:
            continue
        workspace, slot = parsed
        try:
            managed = workspaces.has_session(name)
        except WorkspaceRegistryError as exc:
            logger.warning("Workspace registry unavailable during reconcile", extra={"error": str(exc)})
            managed = False
        if managed:
            continue
        agent_type = directory.read_agent_meta(workspace, slot) or "unknown"
        agent = TrackedAgent(agent_type=agent_type, target=target_for_session(name), spawn_mode="window")
        if registry.adopt(workspace, slot, agent):
            adopted.append(
                {"workspace": workspace, "slot": slot, "session_name": name, "agent_type": agent_type}
            )

    keep = [
        agent.pipe_path
        for slots in registry.snapshot_all().values()
        for agent in slots.values()
        if agent.pipe_path
    ]
    removed_pipes = clean_stale_pipe_files(pipe_dir, keep)
    restored = reconcile_hook_file_state(directory, set(sessions))

    summary = {
        "sessions_seen": len(sessions),
        "adopted": adopted,
        "stale_pipes_removed": len(removed_pipes),
        "hooks_restored": [{"workspace": workspace, "slot": slot} for workspace, slot in restored],
    }
    if adopted or removed_pipes or restored:
        logger.info(
            "Reconciled tmux sessions",
            extra={
                "adopted": len(adopted),
                "stale_pipes_removed": len(removed_pipes),
                "hooks_restored": len(restored),
            },
        )
    return summary


def create_server(
    settings: Optional[TermtileSettings] = None,
    *,
    tmux_runner: TmuxRunner | None = None,
    config: TermtileConfig | None = None,
    registry: SlotRegistry | None = None,
    workspaces: WorkspaceRegistry | None = None,
    desktop: Desktop | None = None,
    action_log: ChromaStore | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with its tools and status resource."""

    settings = settings or get_settings()
    config = config or ConfigLoader(settings.config_path).load()

    tmux_metadata: dict[str, Any] = {"available": False, "version": None, "error": None}
    runner = tmux_runner or TmuxRunner()
    try:
        version_result = _run_sync(runner.version())
        tmux_metadata["available"] = version_result.ok
        if version_result.ok:
            tmux_metadata["version"] = version_result.stdout.strip()
        else:
            tmux_metadata["error"] = version_result.stderr.strip() or "tmux -V failed"
    except (TmuxNotFoundError, OSError) as exc:
        tmux_metadata["error"] = str(exc)

    artifacts = ArtifactStore(settings.artifact_cap_bytes)
    directory = ArtifactDirectory(settings.resolved_artifact_root)
    registry = registry or SlotRegistry(artifacts)
    workspaces = workspaces or JsonWorkspaceRegistry(settings.resolved_registry_path)
    resolver = WorkspaceResolver(workspaces)
    idle = IdleDetector(runner, registry, config.agents, artifacts)
    scheduler = DependencyScheduler(
        runner, registry, idle, poll_interval=settings.dependency_poll_seconds
    )
    spawner = SpawnOrchestrator(
        runner,
        registry,
        config,
        artifacts=artifacts,
        directory=directory,
        resolver=resolver,
        workspaces=workspaces,
        scheduler=scheduler,
        pipe_dir=settings.resolved_pipe_dir,
        desktop=desktop,
        hook_command=settings.hook_command,
    )

    chroma_metadata: dict[str, Any] = {
        "enabled": settings.action_log_enabled or action_log is not None,
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "termtile_actions",
        "error": None,
    }
    if action_log is None and settings.action_log_enabled:
        action_log = ChromaStore(settings.chroma_persist_path)
    if action_log is not None:
        try:
            action_log.ping()
            chroma_metadata["available"] = True
        except ChromaUnavailableError as exc:
            chroma_metadata["error"] = str(exc)
            action_log = None

    if tmux_metadata["available"]:
        reconcile_summary = _run_sync(
            reconcile_sessions(runner, registry, workspaces, directory, settings.resolved_pipe_dir)
        )
    else:
        logger.warning("tmux unavailable; skipping session reconcile", extra={"error": tmux_metadata["error"]})
        reconcile_summary = {"sessions_seen": 0, "adopted": [], "stale_pipes_removed": 0, "hooks_restored": []}
    if action_log is not None:
        try:
            action_log.record_action(
                action="reconcile", workspace=DEFAULT_WORKSPACE, slot=-1, details=reconcile_summary
            )
        except ChromaUnavailableError as exc:
            logger.warning("Action log unavailable", extra={"error": str(exc)})

    server = FastMCP(
        name="termtile MCP",
        version=__version__,
        instructions=(
            "termtile runs AI coding agents in tmux panes or tiled terminal windows. "
            "Spawn agents into workspace slots, send them tasks, wait for them to go "
            "idle, and read their output or captured artifacts."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        config=config,
        runner=runner,
        registry=registry,
        artifacts=artifacts,
        directory=directory,
        resolver=resolver,
        workspaces=workspaces,
        idle=idle,
        spawner=spawner,
        desktop=desktop,
        action_log=action_log,
    )

    def status_payload(request_id: str | None = None) -> dict[str, Any]:
        tracked = {
            workspace: [
                {
                    "slot": slot,
                    "agent_type": agent.agent_type,
                    "session_name": agent.target,
                    "spawn_mode": agent.spawn_mode,
                    "response_fence": agent.response_fence,
                }
                for slot, agent in sorted(slots.items())
            ]
            for workspace, slots in registry.snapshot_all().items()
        }

        action_counts: dict[str, int] = {}
        storage_error = None
        if action_log is not None:
            try:
                action_counts = action_log.action_counts()
            except ChromaUnavailableError as exc:
                storage_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "agents": {"count": len(config.agents), "types": sorted(config.agents)},
            "tmux": tmux_metadata,
            "tracked": {
                "count": sum(len(slots) for slots in tracked.values()),
                "workspaces": tracked,
            },
            "artifacts": {
                "in_memory": len(artifacts),
                "cap_bytes": artifacts.cap_bytes,
                "root": str(directory.root),
            },
            "reconcile": reconcile_summary,
            "storage": {
                "chroma": chroma_metadata,
                "action_counts": action_counts,
                "error": storage_error,
            },
            "request_id": request_id,
        }
        return payload

    @server.resource(
        "resource://termtile/status",
        name="termtile_status",
        title="termtile MCP Status",
        description="Provides the current runtime status for the termtile MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        return json.dumps(status_payload(getattr(context, "request_id", None)))

    setattr(server, "status_payload", status_payload)
    setattr(server, "tmux_runner", runner)
    setattr(server, "tmux_metadata", tmux_metadata)
    setattr(server, "agent_config", config)
    setattr(server, "slot_registry", registry)
    setattr(server, "artifact_store", artifacts)
    setattr(server, "artifact_directory", directory)
    setattr(server, "spawner", spawner)
    setattr(server, "action_log", action_log)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "reconcile_summary", reconcile_summary)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the termtile MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching termtile MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "tmux_available": getattr(server, "tmux_metadata", {}).get("available"),
            "action_log_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
