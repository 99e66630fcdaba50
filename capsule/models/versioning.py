"""Data models for checkpoints, restores and published bundles."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


@dataclass(frozen=True)
class Project:
    project_id: str
    user_id: str
    sandbox_id: Optional[str] = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    server_status: str = "open"
    updated_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class Commit:
    id: str
    project_id: str
    github_sha: str
    user_message: str
    bundle_url: Optional[str] = None
    created_at: datetime = field(default_factory=_now)

    def with_bundle_url(self, bundle_url: str) -> "Commit":
        return replace(self, bundle_url=bundle_url)

    def to_version(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message": self.user_message,
            "timestamp": self.created_at.isoformat(),
            "commitId": self.github_sha,
            "bundleUrl": self.bundle_url,
        }


@dataclass(frozen=True)
class CommitResult:
    success: bool
    commit: Optional[Commit] = None
    skipped: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class RestoreResult:
    success: bool
    commit_sha: str
    touched_files: tuple[str, ...] = ()
    error: Optional[str] = None
    details: Optional[str] = None


@dataclass(frozen=True)
class BundleManifest:
    project_id: str
    commit_sha: str
    files: dict[str, str]

    def url_for(self, path: str) -> Optional[str]:
        return self.files.get(path.lstrip("/"))


@dataclass(frozen=True)
class BundleResult:
    success: bool
    commit_id: str
    manifest_url: Optional[str] = None
    bundle_url: Optional[str] = None
    manifest: Optional[BundleManifest] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CleanupResult:
    deleted_count: int = 0
    freed_bytes: int = 0
    errors: tuple[str, ...] = ()
