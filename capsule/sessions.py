"""Connect, pause and liveness checks against remote sandboxes."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
import threading
from typing import Sequence

from capsule.errors import NotFoundError, TransientNetworkError, ValidationError
from capsule.models.sandbox import (
    ExecResult,
    FileEntry,
    Liveness,
    PauseResult,
    SandboxInfo,
    SandboxStatus,
)
from capsule.models.versioning import ProjectStatus
from capsule.providers.sandbox.base import SandboxProvider
from capsule.store.base import ProjectStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SandboxHandle:
    info: SandboxInfo
    provider: SandboxProvider

    @property
    def sandbox_id(self) -> str:
        return self.info.sandbox_id

    @property
    def working_dir(self) -> str:
        return self.info.working_dir

    def exec(
        self,
        command: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_s: int | None = None,
    ) -> ExecResult:
        return self.provider.exec(
            self.sandbox_id, command, cwd=cwd, env=env, timeout_s=timeout_s
        )

    def read_file(self, path: str) -> bytes:
        return self.provider.read_file(self.sandbox_id, path)

    def write_file(self, path: str, data: bytes) -> None:
        self.provider.write_file(self.sandbox_id, path, data)

    def list_files(self, path: str) -> Sequence[FileEntry]:
        return self.provider.list_files(self.sandbox_id, path)


class SandboxSessionManager:
    def __init__(
        self, provider: SandboxProvider, projects: ProjectStore | None = None
    ) -> None:
        self._provider = provider
        self._projects = projects
        self._statuses: dict[str, SandboxStatus] = {}
        self._lock = threading.Lock()

    @property
    def provider(self) -> SandboxProvider:
        return self._provider

    def connect(self, sandbox_id: str) -> SandboxHandle:
        if not sandbox_id:
            raise ValidationError("Sandbox ID is required", field="sandboxId")
        try:
            info = self._provider.connect(sandbox_id)
        except NotFoundError:
            raise
        except Exception as exc:
            raise TransientNetworkError(
                f"Failed to connect to sandbox {sandbox_id}: {exc}"
            ) from exc
        self._set_status(sandbox_id, SandboxStatus.ACTIVE)
        return SandboxHandle(info=info, provider=self._provider)

    def pause(self, handle: SandboxHandle) -> PauseResult:
        caveat = None
        paused_id = handle.sandbox_id
        try:
            paused_id = self._provider.pause(handle.sandbox_id) or handle.sandbox_id
        except Exception as exc:
            # Double-pausing is harmless; staying marked active is not.
            caveat = f"Sandbox pause did not complete cleanly: {exc}"
            logger.warning("Pause of sandbox %s failed: %s", handle.sandbox_id, exc)
        self._set_status(handle.sandbox_id, SandboxStatus.PAUSED)
        self._mark_project_paused(handle.sandbox_id)
        logger.info("Paused sandbox %s", handle.sandbox_id)
        return PauseResult(
            sandbox_id=handle.sandbox_id, paused_sandbox_id=paused_id, caveat=caveat
        )

    def pause_project(self, project_id: str, user_id: str) -> PauseResult:
        if not project_id or not user_id:
            raise ValidationError("Project ID and User ID are required")
        if self._projects is None:
            raise NotFoundError("Project not found")
        project = self._projects.get_owned(project_id, user_id)
        if project is None or project.status != ProjectStatus.ACTIVE:
            raise NotFoundError("Project not found")
        if not project.sandbox_id:
            raise ValidationError("No sandbox associated with project", field="sandboxId")
        try:
            handle = self.connect(project.sandbox_id)
        except NotFoundError:
            handle = SandboxHandle(
                info=SandboxInfo(
                    sandbox_id=project.sandbox_id,
                    status=SandboxStatus.PAUSED,
                    working_dir="",
                    timeout_ms=0,
                    request_timeout_ms=0,
                ),
                provider=self._provider,
            )
        return self.pause(handle)

    def check_alive(self, sandbox_id: str) -> Liveness:
        if not sandbox_id:
            return Liveness(alive=False, reason="Sandbox ID is required")
        try:
            self.connect(sandbox_id)
        except NotFoundError as exc:
            logger.debug("Sandbox not found or dead: %s", sandbox_id)
            return Liveness(alive=False, reason=str(exc))
        except Exception as exc:
            logger.warning("Error verifying sandbox %s: %s", sandbox_id, exc)
            return Liveness(alive=False, reason="Error verifying sandbox status")
        return Liveness(alive=True)

    def status(self, sandbox_id: str) -> SandboxStatus | None:
        with self._lock:
            return self._statuses.get(sandbox_id)

    def _set_status(self, sandbox_id: str, status: SandboxStatus) -> None:
        with self._lock:
            self._statuses[sandbox_id] = status

    def _mark_project_paused(self, sandbox_id: str) -> None:
        if self._projects is None:
            return
        project = self._projects.find_by_sandbox(sandbox_id)
        if project is None:
            return
        self._projects.save(
            replace(
                project,
                status=ProjectStatus.PAUSED,
                server_status="closed",
                updated_at=datetime.now(timezone.utc),
            )
        )
