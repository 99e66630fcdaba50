"""In-memory project and commit stores."""

from __future__ import annotations

import threading
from typing import Sequence

from capsule.models.versioning import Commit, Project
from capsule.store.base import CommitStore, ProjectStore


class InMemoryProjectStore(ProjectStore):
    def __init__(self) -> None:
        self._projects: dict[str, Project] = {}
        self._lock = threading.Lock()

    def get(self, project_id: str) -> Project | None:
        with self._lock:
            return self._projects.get(project_id)

    def get_owned(self, project_id: str, user_id: str) -> Project | None:
        project = self.get(project_id)
        if project is None or project.user_id != user_id:
            return None
        return project

    def find_by_sandbox(self, sandbox_id: str) -> Project | None:
        with self._lock:
            for project in self._projects.values():
                if project.sandbox_id == sandbox_id:
                    return project
        return None

    def save(self, project: Project) -> Project:
        with self._lock:
            self._projects[project.project_id] = project
        return project


class InMemoryCommitStore(CommitStore):
    def __init__(self) -> None:
        self._commits: list[Commit] = []
        self._lock = threading.Lock()

    def add(self, commit: Commit) -> Commit:
        with self._lock:
            self._commits.append(commit)
        return commit

    def list_for_project(self, project_id: str, limit: int) -> Sequence[Commit]:
        with self._lock:
            owned = [commit for commit in self._commits if commit.project_id == project_id]
        owned.sort(key=lambda commit: commit.created_at, reverse=True)
        return owned[: max(limit, 0)]

    def get_by_sha(self, project_id: str, sha: str) -> Commit | None:
        with self._lock:
            for commit in reversed(self._commits):
                if commit.project_id == project_id and commit.github_sha == sha:
                    return commit
        return None

    def set_bundle_url(self, project_id: str, sha: str, bundle_url: str) -> Commit | None:
        with self._lock:
            for index in range(len(self._commits) - 1, -1, -1):
                commit = self._commits[index]
                if commit.project_id == project_id and commit.github_sha == sha:
                    updated = commit.with_bundle_url(bundle_url)
                    self._commits[index] = updated
                    return updated
        return None

    def delete(self, commit_id: str) -> None:
        with self._lock:
            self._commits = [commit for commit in self._commits if commit.id != commit_id]
