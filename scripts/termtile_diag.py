"""termtile MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from termtile_mcp.artifacts import ArtifactDirectory
from termtile_mcp.config import TermtileSettings
from termtile_mcp.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: TermtileSettings) -> ChromaStore:
    store = ChromaStore(settings.chroma_persist_path.expanduser())
    try:
        store.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return store


def load_directory(settings: TermtileSettings) -> ArtifactDirectory:
    return ArtifactDirectory(settings.resolved_artifact_root.expanduser())


def cmd_actions(args: argparse.Namespace) -> None:
    settings = TermtileSettings()
    store = load_store(settings)
    try:
        records = store.list_actions(
            workspace=args.workspace,
            slot=args.slot,
            action=args.action,
            limit=args.limit if args.limit and args.limit > 0 else None,
        )
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.json:
        print(json.dumps([record.to_dict() for record in records], indent=2))
    else:
        for record in records:
            error = record.details.get("error")
            suffix = f" error={error}" if error else ""
            print(
                f"{record.timestamp.isoformat()} {record.action} "
                f"{record.workspace}:{record.slot}{suffix}"
            )


def cmd_artifacts(args: argparse.Namespace) -> None:
    directory = load_directory(TermtileSettings())
    rows = []
    for workspace, slot, _slot_dir in directory.iter_slots():
        if args.workspace and workspace != args.workspace:
            continue
        hook = directory.read_output(workspace, slot)
        rows.append(
            {
                "workspace": workspace,
                "slot": slot,
                "agent_type": directory.read_agent_meta(workspace, slot),
                "ready": hook.ready,
                "output_bytes": len(hook.output.encode("utf-8")),
                "reason": hook.reason,
                "modified_at": hook.modified_at.isoformat() if hook.modified_at else None,
            }
        )
    print(json.dumps(rows, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = TermtileSettings()
    store = load_store(settings)
    try:
        counts = store.action_counts()
        records = store.list_actions()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    per_workspace: dict[str, int] = {}
    for record in records:
        per_workspace[record.workspace] = per_workspace.get(record.workspace, 0) + 1

    errors = counts.pop("errors", 0)
    metrics = {
        "actions_total": sum(counts.values()),
        "action_counts": counts,
        "error_count": errors,
        "workspace_counts": per_workspace,
        "last_action_at": records[-1].timestamp.isoformat() if records else None,
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="termtile MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_actions = sub.add_parser("actions", help="List recorded agent actions")
    p_actions.add_argument("--workspace")
    p_actions.add_argument("--slot", type=int)
    p_actions.add_argument("--action", help="Filter by tool name, e.g. spawn_agent")
    p_actions.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N actions",
    )
    p_actions.add_argument("--json", action="store_true", help="Output JSON")
    p_actions.set_defaults(func=cmd_actions)

    p_artifacts = sub.add_parser("artifacts", help="Inspect on-disk artifact directories")
    p_artifacts.add_argument("--workspace")
    p_artifacts.set_defaults(func=cmd_artifacts)

    p_metrics = sub.add_parser("metrics", help="Show action counts")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
