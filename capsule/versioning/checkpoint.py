"""Create, list and restore project checkpoints stored in the sandbox repository."""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
import logging
import threading
from typing import Iterator, Sequence
import uuid

from capsule.agent.cancellation import CancellationToken
from capsule.agent.hooks import HookResult, SessionEvent, SessionEventName, SessionHook
from capsule.errors import (
    CapsuleError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from capsule.models.versioning import Commit, CommitResult, Project, RestoreResult
from capsule.providers.scm.base import ScmProvider
from capsule.providers.vcs.base import VersionControlBackend
from capsule.sessions import SandboxHandle, SandboxSessionManager
from capsule.store.base import CommitStore, ProjectStore
from capsule.versioning.bundle import BundleBuilder

logger = logging.getLogger(__name__)

DEFAULT_DEV_SERVER_PATTERNS: tuple[str, ...] = ("expo start", "metro", "next dev", "vite")
DEFAULT_TOUCH_FILES: tuple[str, ...] = ("app/_layout.tsx", "App.tsx", "app.json", "package.json")
DEFAULT_CACHE_DIRS: tuple[str, ...] = (".expo", "node_modules/.cache")

PROJECT_NOT_FOUND = "Project not found or access denied"

_TOUCH_SCRIPT = 'for f in "$@"; do if [ -e "$f" ]; then touch "$f" && echo "$f"; fi; done'


class CheckpointEngine:
    """Commits and restores the working tree of a project's sandbox.

    Commit and restore on the same project are serialised by a per-project
    lock. With ``wait=False`` a busy project raises ``ConflictError`` instead
    of waiting; different projects never contend.
    """

    def __init__(
        self,
        vcs: VersionControlBackend,
        commits: CommitStore,
        projects: ProjectStore,
        sessions: SandboxSessionManager,
        scm: ScmProvider | None = None,
        commit_list_cap: int = 50,
        dev_server_patterns: Sequence[str] = DEFAULT_DEV_SERVER_PATTERNS,
        touch_files: Sequence[str] = DEFAULT_TOUCH_FILES,
        cache_dirs: Sequence[str] = DEFAULT_CACHE_DIRS,
    ) -> None:
        self._vcs = vcs
        self._commits = commits
        self._projects = projects
        self._sessions = sessions
        self._scm = scm
        self._cap = commit_list_cap
        self._dev_server_patterns = tuple(dev_server_patterns)
        self._touch_files = tuple(touch_files)
        self._cache_dirs = tuple(cache_dirs)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def vcs(self) -> VersionControlBackend:
        return self._vcs

    @contextmanager
    def project_lock(self, project_id: str, wait: bool = True) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(project_id, threading.Lock())
        if not lock.acquire(blocking=wait):
            raise ConflictError(
                f"Another checkpoint operation is running for project {project_id}"
            )
        try:
            yield
        finally:
            lock.release()

    def create_commit(
        self,
        project_id: str,
        handle: SandboxHandle,
        user_message: str,
        wait: bool = True,
    ) -> CommitResult:
        if not project_id:
            raise ValidationError("Project ID is required", field="projectId")
        if not user_message or not user_message.strip():
            raise ValidationError("User message is required", field="userMessage")

        with self.project_lock(project_id, wait=wait):
            sandbox_id, cwd = handle.sandbox_id, handle.working_dir
            try:
                self._vcs.ensure_repository(sandbox_id, cwd)
                sha = self._vcs.stage_and_commit(sandbox_id, cwd, user_message.strip())
            except CapsuleError as exc:
                logger.error("Commit failed for project %s: %s", project_id, exc)
                return CommitResult(success=False, error=str(exc))

            commit = self._commits.add(
                Commit(
                    id=uuid.uuid4().hex,
                    project_id=project_id,
                    github_sha=sha,
                    user_message=user_message.strip(),
                )
            )
            logger.info("Created commit %s for project %s", sha[:12], project_id)

            try:
                self._ensure_remote(project_id, sandbox_id, cwd)
                if not self._vcs.has_remote(sandbox_id, cwd):
                    logger.info("No remote configured for project %s; push skipped", project_id)
                    return CommitResult(success=True, commit=commit, skipped=True)
                auth = self._scm.auth() if self._scm is not None else None
                self._vcs.push(sandbox_id, cwd, auth=auth)
            except CapsuleError as exc:
                logger.warning("Push failed for project %s: %s", project_id, exc)
                return CommitResult(success=True, commit=commit, error=str(exc))
            return CommitResult(success=True, commit=commit)

    def list_commits(
        self,
        project_id: str,
        limit: int | None = None,
        user_id: str | None = None,
    ) -> list[Commit]:
        if not project_id:
            raise ValidationError("Project ID is required", field="projectId")
        if user_id is not None:
            self._owned_project(project_id, user_id)
        effective = self._cap if not limit or limit <= 0 else min(limit, self._cap)
        return list(self._commits.list_for_project(project_id, effective))

    def restore_commit(
        self,
        project_id: str,
        commit_sha: str,
        user_id: str,
        wait: bool = True,
    ) -> RestoreResult:
        """Reset the project sandbox to ``commit_sha`` on behalf of its owner."""
        if not project_id:
            raise ValidationError("Project ID is required", field="projectId")
        if not commit_sha:
            raise ValidationError("Commit SHA is required", field="commitSHA")
        if not user_id:
            raise ValidationError("User ID is required", field="userId")
        project = self._owned_project(project_id, user_id)
        if not project.sandbox_id:
            raise ValidationError("No sandbox associated with project", field="sandboxId")

        with self.project_lock(project_id, wait=wait):
            handle = self._sessions.connect(project.sandbox_id)
            sandbox_id, cwd = handle.sandbox_id, handle.working_dir
            recorded = self._commits.get_by_sha(project_id, commit_sha)
            if recorded is None and not self._vcs.has_commit(sandbox_id, cwd, commit_sha):
                raise NotFoundError(f"Commit {commit_sha} not found for project {project_id}")

            logger.info("Restoring project %s to %s", project_id, commit_sha[:12])
            self._stop_dev_server(handle)
            try:
                self._vcs.checkout(sandbox_id, cwd, commit_sha)
            except NotFoundError:
                raise
            except CapsuleError as exc:
                logger.error("Restore of %s failed: %s", commit_sha[:12], exc)
                return RestoreResult(
                    success=False,
                    commit_sha=commit_sha,
                    error="Failed to restore commit",
                    details=str(exc),
                )
            touched = self._touch_key_files(handle)
            self._clear_cache(handle)
        return RestoreResult(success=True, commit_sha=commit_sha, touched_files=touched)

    def legacy_bundle_url(self, project_id: str, commit_sha: str, path: str) -> str:
        """Resolve ``path`` against the bundle base recorded for a commit."""
        commit = self._commits.get_by_sha(project_id, commit_sha)
        if commit is None or not commit.bundle_url:
            raise NotFoundError("Bundle not found for this commit")
        bundle_url = commit.bundle_url
        if "/ios/manifest.json" in bundle_url:
            base = bundle_url.replace("/ios/manifest.json", "/")
        elif bundle_url.endswith("/"):
            base = bundle_url
        else:
            base = f"{bundle_url}/"
        return f"{base}{path.lstrip('/')}"

    def _owned_project(self, project_id: str, user_id: str | None) -> Project:
        if user_id is None:
            project = self._projects.get(project_id)
        else:
            project = self._projects.get_owned(project_id, user_id)
        if project is None:
            raise NotFoundError(PROJECT_NOT_FOUND)
        return project

    def _ensure_remote(self, project_id: str, sandbox_id: str, cwd: str) -> None:
        if self._scm is None or self._vcs.has_remote(sandbox_id, cwd):
            return
        repository = self._scm.ensure_repository(project_id)
        self._vcs.set_remote(sandbox_id, cwd, repository.clone_url)
        logger.info("Linked project %s to %s", project_id, repository.full_name)

    def _stop_dev_server(self, handle: SandboxHandle) -> None:
        for pattern in self._dev_server_patterns:
            result = handle.exec(["pkill", "-f", pattern], timeout_s=10)
            # pkill exits 1 when nothing matched.
            if result.exit_code not in (0, 1):
                logger.warning("pkill %r exited %d: %s", pattern, result.exit_code, result.stderr)

    def _touch_key_files(self, handle: SandboxHandle) -> tuple[str, ...]:
        if not self._touch_files:
            return ()
        result = handle.exec(
            ["sh", "-c", _TOUCH_SCRIPT, "touch", *self._touch_files],
            cwd=handle.working_dir,
            timeout_s=10,
        )
        return tuple(line for line in result.stdout.splitlines() if line)

    def _clear_cache(self, handle: SandboxHandle) -> None:
        if not self._cache_dirs:
            return
        result = handle.exec(
            ["rm", "-rf", *self._cache_dirs], cwd=handle.working_dir, timeout_s=30
        )
        if not result.ok:
            logger.warning("Clearing bundler cache failed: %s", result.stderr.strip())


def create_checkpoint_hook(
    engine: CheckpointEngine,
    project_id: str,
    handle: SandboxHandle,
    message: str,
    bundler: BundleBuilder | None = None,
) -> SessionHook:
    """Hook that commits the working tree when a run ends normally."""

    async def create_checkpoint(
        event: SessionEvent, hook_run_id: str | None, cancel: CancellationToken
    ) -> HookResult:
        if event.name != SessionEventName.SESSION_END or cancel.cancelled:
            return HookResult.CONTINUE
        result = await asyncio.to_thread(engine.create_commit, project_id, handle, message)
        if not result.success or result.commit is None:
            logger.error("Checkpoint after run %s failed: %s", hook_run_id, result.error)
            return HookResult.CONTINUE
        if bundler is not None:
            bundle = await asyncio.to_thread(
                bundler.build_static_bundle,
                handle,
                project_id,
                result.commit.github_sha,
                message,
            )
            if not bundle.success:
                logger.warning(
                    "Bundle for commit %s failed: %s",
                    result.commit.github_sha[:12],
                    bundle.error,
                )
        return HookResult.CONTINUE

    return create_checkpoint


