"""Data models for the persisted action log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class ActionRecord:
    id: str
    action: str
    workspace: str
    slot: int
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "workspace": self.workspace,
            "slot": self.slot,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }
