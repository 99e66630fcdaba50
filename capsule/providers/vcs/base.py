"""Version control backend interface."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Sequence


@dataclass(frozen=True)
class LogEntry:
    sha: str
    message: str
    committed_at: datetime


class VersionControlBackend(Protocol):
    def ensure_repository(self, sandbox_id: str, path: str) -> None:
        ...

    def stage_and_commit(self, sandbox_id: str, path: str, message: str) -> str:
        ...

    def head(self, sandbox_id: str, path: str) -> str | None:
        ...

    def has_commit(self, sandbox_id: str, path: str, sha: str) -> bool:
        ...

    def has_remote(self, sandbox_id: str, path: str, remote: str = "origin") -> bool:
        ...

    def set_remote(
        self, sandbox_id: str, path: str, url: str, remote: str = "origin"
    ) -> None:
        ...

    def push(
        self,
        sandbox_id: str,
        path: str,
        remote: str = "origin",
        branch: str | None = None,
        auth: dict[str, str] | None = None,
    ) -> None:
        ...

    def checkout(self, sandbox_id: str, path: str, sha: str) -> None:
        ...

    def log(self, sandbox_id: str, path: str, limit: int) -> Sequence[LogEntry]:
        ...
