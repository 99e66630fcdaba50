"""File change events pushed to live observers of a project."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
from typing import Any, Optional


class FileChangeKind(str, Enum):
    CONNECTED = "connected"
    CHANGED = "changed"
    ADDED = "added"
    REMOVED = "removed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FileChangeEvent:
    project_id: str
    kind: FileChangeKind
    path: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)

    @classmethod
    def connected(cls, project_id: str) -> "FileChangeEvent":
        return cls(project_id=project_id, kind=FileChangeKind.CONNECTED)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.kind.value,
            "projectId": self.project_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.path is not None:
            payload["path"] = self.path
        return payload

    def to_sse(self) -> bytes:
        """Encode as a single server-sent-events ``data:`` frame."""
        return f"data: {json.dumps(self.to_payload())}\n\n".encode("utf-8")
