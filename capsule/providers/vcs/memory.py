"""In-memory version control backend with its own working trees."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import hashlib
import threading
from typing import Callable, Sequence

from capsule.errors import CommandError, NotFoundError
from capsule.providers.vcs.base import LogEntry, VersionControlBackend


@dataclass
class _Snapshot:
    sha: str
    message: str
    tree: dict[str, bytes]
    committed_at: datetime


@dataclass
class _Repository:
    working_tree: dict[str, bytes] = field(default_factory=dict)
    history: list[_Snapshot] = field(default_factory=list)
    head: str | None = None
    remotes: dict[str, str] = field(default_factory=dict)
    pushed: list[tuple[str, str]] = field(default_factory=list)


class InMemoryVersionControl(VersionControlBackend):
    """Stores snapshots of a dict-based working tree per ``(sandbox, path)``.

    ``on_checkout`` is invoked while a checkout is in progress, which lets
    callers observe whether checkouts against one tree overlap.
    """

    def __init__(self, fail_push: bool = False) -> None:
        self._repos: dict[tuple[str, str], _Repository] = {}
        self._lock = threading.Lock()
        self.fail_push = fail_push
        self.on_checkout: Callable[[str, str, str], None] | None = None

    def write(self, sandbox_id: str, path: str, name: str, content: bytes) -> None:
        with self._lock:
            self._repo(sandbox_id, path).working_tree[name] = content

    def remove(self, sandbox_id: str, path: str, name: str) -> None:
        with self._lock:
            self._repo(sandbox_id, path).working_tree.pop(name, None)

    def tree(self, sandbox_id: str, path: str) -> dict[str, bytes]:
        with self._lock:
            return dict(self._repo(sandbox_id, path).working_tree)

    def pushes(self, sandbox_id: str, path: str) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._repo(sandbox_id, path).pushed)

    def ensure_repository(self, sandbox_id: str, path: str) -> None:
        with self._lock:
            self._repo(sandbox_id, path)

    def stage_and_commit(self, sandbox_id: str, path: str, message: str) -> str:
        with self._lock:
            repo = self._repo(sandbox_id, path)
            tree = dict(repo.working_tree)
            digest = hashlib.sha1()
            digest.update((repo.head or "").encode("utf-8"))
            digest.update(message.encode("utf-8"))
            digest.update(str(len(repo.history)).encode("utf-8"))
            for name in sorted(tree):
                digest.update(name.encode("utf-8"))
                digest.update(tree[name])
            committed_at = datetime.now(timezone.utc)
            if repo.history and committed_at <= repo.history[-1].committed_at:
                committed_at = repo.history[-1].committed_at + timedelta(microseconds=1)
            snapshot = _Snapshot(
                sha=digest.hexdigest(),
                message=message,
                tree=tree,
                committed_at=committed_at,
            )
            repo.history.append(snapshot)
            repo.head = snapshot.sha
            return snapshot.sha

    def head(self, sandbox_id: str, path: str) -> str | None:
        with self._lock:
            return self._repo(sandbox_id, path).head

    def has_commit(self, sandbox_id: str, path: str, sha: str) -> bool:
        with self._lock:
            return self._find(self._repo(sandbox_id, path), sha) is not None

    def has_remote(self, sandbox_id: str, path: str, remote: str = "origin") -> bool:
        with self._lock:
            return remote in self._repo(sandbox_id, path).remotes

    def set_remote(
        self, sandbox_id: str, path: str, url: str, remote: str = "origin"
    ) -> None:
        with self._lock:
            self._repo(sandbox_id, path).remotes[remote] = url

    def push(
        self,
        sandbox_id: str,
        path: str,
        remote: str = "origin",
        branch: str | None = None,
        auth: dict[str, str] | None = None,
    ) -> None:
        with self._lock:
            repo = self._repo(sandbox_id, path)
            if remote not in repo.remotes:
                raise CommandError(f"Unknown git remote: {remote}", exit_code=128)
            if self.fail_push:
                raise CommandError("push rejected", exit_code=1)
            repo.pushed.append((remote, repo.head or ""))

    def checkout(self, sandbox_id: str, path: str, sha: str) -> None:
        with self._lock:
            repo = self._repo(sandbox_id, path)
            snapshot = self._find(repo, sha)
            if snapshot is None:
                raise NotFoundError(f"Unknown commit: {sha}")
        if self.on_checkout is not None:
            self.on_checkout(sandbox_id, path, sha)
        with self._lock:
            repo.working_tree = dict(snapshot.tree)
            repo.head = snapshot.sha

    def log(self, sandbox_id: str, path: str, limit: int) -> Sequence[LogEntry]:
        with self._lock:
            history = list(self._repo(sandbox_id, path).history)
        return [
            LogEntry(sha=item.sha, message=item.message, committed_at=item.committed_at)
            for item in reversed(history[-limit:] if limit > 0 else [])
        ]

    def _repo(self, sandbox_id: str, path: str) -> _Repository:
        key = (sandbox_id, path)
        if key not in self._repos:
            self._repos[key] = _Repository()
        return self._repos[key]

    @staticmethod
    def _find(repo: _Repository, sha: str) -> _Snapshot | None:
        for snapshot in repo.history:
            if snapshot.sha == sha or snapshot.sha.startswith(sha):
                return snapshot
        return None
