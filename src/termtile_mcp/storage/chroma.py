"""Action log persisted in a Chroma collection."""

from __future__ import annotations

import json
import uuid
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import ActionRecord

COLLECTION_NAME = "termtile_actions"


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class ActionCollection(Protocol):
    """The subset of a Chroma collection the action log relies on."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ActionClient(Protocol):
    def get_or_create_collection(self, name: str) -> ActionCollection:
        ...


def slot_key(workspace: str, slot: int) -> str:
    return f"{workspace}::{slot}"


def _flatten(value: Any) -> str | int | float | bool:
    # Chroma metadata values must be scalars.
    if isinstance(value, (str, int, float, bool)):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def _where(**terms: Any) -> dict[str, Any] | None:
    clauses = [{key: value} for key, value in terms.items() if value is not None]
    if len(clauses) > 1:
        return {"$and": clauses}
    return clauses[0] if clauses else None


class ChromaStore:
    """Records tool invocations per workspace slot.

    Each action is one Chroma document: the JSON-encoded details, with the
    workspace, slot, action name, timestamp and a per-process sequence number
    as metadata. A failed action also carries its ``error`` in the metadata so
    failures can be filtered without decoding documents.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = COLLECTION_NAME,
        client_factory: Callable[[], ActionClient] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._persistent_client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._collection: ActionCollection | None = None
        self._sequence = 0

    @property
    def path(self) -> Path:
        return self._path

    def _persistent_client(self) -> ActionClient:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install termtile-mcp with the persistence extra"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _actions(self) -> ActionCollection:
        if self._collection is None:
            self._collection = self._client_factory().get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        """Open the collection, raising ``ChromaUnavailableError`` when that is impossible."""

        self._actions()
        return True

    def record_action(
        self,
        *,
        action: str,
        workspace: str,
        slot: int,
        details: dict[str, Any] | None = None,
    ) -> ActionRecord:
        details = dict(details or {})
        self._sequence += 1
        timestamp = self._clock()
        record = ActionRecord(
            id=f"{slot_key(workspace, slot)}:{uuid.uuid4().hex}",
            action=action,
            workspace=workspace,
            slot=slot,
            timestamp=timestamp,
            details=details,
        )

        metadata: dict[str, Any] = {
            "slot_key": slot_key(workspace, slot),
            "workspace": workspace,
            "slot": slot,
            "action": action,
            "timestamp": timestamp.isoformat(),
            "sequence": self._sequence,
        }
        if details.get("error") is not None:
            metadata["error"] = _flatten(details["error"])

        self._actions().add(
            documents=[json.dumps(details, sort_keys=True, default=str)],
            metadatas=[metadata],
            ids=[record.id],
        )
        return record

    def search_actions(
        self,
        query: str | None = None,
        *,
        workspace: str | None = None,
        slot: int | None = None,
        action: str | None = None,
        limit: int | None = None,
    ) -> list[ActionRecord]:
        """Return matching actions oldest first; ``limit`` keeps the most recent ones.

        ``query`` is a case-insensitive substring match against the stored
        details and metadata.
        """

        result = self._actions().get(where=_where(workspace=workspace, slot=slot, action=action))
        rows = sorted(
            zip(result.get("ids") or [], result.get("documents") or [], result.get("metadatas") or []),
            key=lambda row: ((row[2] or {}).get("timestamp", ""), (row[2] or {}).get("sequence", 0)),
        )
        if query:
            needle = query.lower()
            rows = [
                row
                for row in rows
                if needle in (row[1] or "").lower()
                or any(needle in str(value).lower() for value in (row[2] or {}).values())
            ]
        if limit:
            rows = rows[-limit:]
        return [self._to_record(record_id, document, metadata or {}) for record_id, document, metadata in rows]

    def list_actions(
        self,
        *,
        workspace: str | None = None,
        slot: int | None = None,
        action: str | None = None,
        limit: int | None = None,
    ) -> list[ActionRecord]:
        return self.search_actions(workspace=workspace, slot=slot, action=action, limit=limit)

    def action_counts(self) -> dict[str, int]:
        """Count recorded actions per name; ``errors`` totals the failed ones."""

        result = self._actions().get()
        counts: Counter[str] = Counter()
        for metadata in result.get("metadatas") or []:
            metadata = metadata or {}
            counts[metadata.get("action", "")] += 1
            if "error" in metadata:
                counts["errors"] += 1
        return dict(counts)

    def _to_record(self, record_id: str, document: str | None, metadata: dict[str, Any]) -> ActionRecord:
        try:
            details = json.loads(document or "{}")
        except json.JSONDecodeError:
            details = {"text": document}
        if not isinstance(details, dict):
            details = {"value": details}
        stamp = metadata.get("timestamp")
        return ActionRecord(
            id=record_id,
            action=metadata.get("action", ""),
            workspace=metadata.get("workspace", ""),
            slot=int(metadata.get("slot", -1)),
            timestamp=datetime.fromisoformat(stamp) if isinstance(stamp, str) else self._clock(),
            details=details,
        )


__all__ = ["COLLECTION_NAME", "ChromaStore", "ChromaUnavailableError", "slot_key"]
