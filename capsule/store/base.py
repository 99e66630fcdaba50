"""Persistence interfaces for projects and their commits."""

from __future__ import annotations

from typing import Protocol, Sequence

from capsule.models.versioning import Commit, Project


class ProjectStore(Protocol):
    def get(self, project_id: str) -> Project | None:
        ...

    def get_owned(self, project_id: str, user_id: str) -> Project | None:
        ...

    def find_by_sandbox(self, sandbox_id: str) -> Project | None:
        ...

    def save(self, project: Project) -> Project:
        ...


class CommitStore(Protocol):
    def add(self, commit: Commit) -> Commit:
        ...

    def list_for_project(self, project_id: str, limit: int) -> Sequence[Commit]:
        ...

    def get_by_sha(self, project_id: str, sha: str) -> Commit | None:
        ...

    def set_bundle_url(self, project_id: str, sha: str, bundle_url: str) -> Commit | None:
        ...

    def delete(self, commit_id: str) -> None:
        ...
