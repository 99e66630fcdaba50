"""E2B sandbox provider backed by the ``e2b`` SDK."""

from __future__ import annotations

import logging
import shlex
import threading
import time
from typing import Any, Sequence

from e2b import CommandExitException, NotFoundException, Sandbox, TimeoutException

from capsule.errors import ConfigurationError, NotFoundError, TransientNetworkError
from capsule.models.sandbox import ExecResult, FileEntry, SandboxInfo, SandboxStatus
from capsule.providers.sandbox.base import SandboxProvider

logger = logging.getLogger(__name__)


class E2BProvider(SandboxProvider):
    def __init__(
        self,
        api_key: str | None,
        working_dir: str = "/home/user/app",
        timeout_ms: int = 3_600_000,
        request_timeout_ms: int = 60_000,
    ) -> None:
        if not api_key:
            raise ConfigurationError("E2B_API_KEY is required for the e2b sandbox backend.")
        self._api_key = api_key
        self._working_dir = working_dir
        self._timeout_ms = timeout_ms
        self._request_timeout_ms = request_timeout_ms
        self._sandboxes: dict[str, Sandbox] = {}
        self._lock = threading.Lock()

    def connect(self, sandbox_id: str) -> SandboxInfo:
        self._get_sandbox(sandbox_id, refresh=True)
        return SandboxInfo(
            sandbox_id=sandbox_id,
            status=SandboxStatus.ACTIVE,
            working_dir=self._working_dir,
            timeout_ms=self._timeout_ms,
            request_timeout_ms=self._request_timeout_ms,
        )

    def pause(self, sandbox_id: str) -> str:
        sandbox = self._get_sandbox(sandbox_id)
        sandbox.beta_pause()
        with self._lock:
            self._sandboxes.pop(sandbox_id, None)
        return sandbox_id

    def exec(
        self,
        sandbox_id: str,
        command: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_s: int | None = None,
    ) -> ExecResult:
        sandbox = self._get_sandbox(sandbox_id)
        start = time.monotonic()
        try:
            result = sandbox.commands.run(
                shlex.join(command),
                cwd=cwd,
                envs=env,
                timeout=timeout_s if timeout_s is not None else 60,
                request_timeout=self._request_timeout_ms / 1000,
            )
            exit_code, stdout, stderr = result.exit_code, result.stdout, result.stderr
        except CommandExitException as exc:
            exit_code, stdout, stderr = exc.exit_code, exc.stdout, exc.stderr
        except TimeoutException as exc:
            raise TransientNetworkError(
                f"Command timed out in sandbox {sandbox_id}: {exc}"
            ) from exc
        duration_ms = int((time.monotonic() - start) * 1000)
        return ExecResult(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
        )

    def read_file(self, sandbox_id: str, path: str) -> bytes:
        sandbox = self._get_sandbox(sandbox_id)
        try:
            return bytes(sandbox.files.read(path, format="bytes"))
        except NotFoundException as exc:
            raise NotFoundError(f"File not found in sandbox {sandbox_id}: {path}") from exc

    def write_file(
        self,
        sandbox_id: str,
        path: str,
        data: bytes,
        mode: int | None = None,
        append: bool = False,
    ) -> None:
        sandbox = self._get_sandbox(sandbox_id)
        if append:
            try:
                data = bytes(sandbox.files.read(path, format="bytes")) + data
            except NotFoundException:
                pass
        sandbox.files.write(path, data)
        if mode is not None:
            self.exec(sandbox_id, ["chmod", format(mode, "o"), path])

    def list_files(self, sandbox_id: str, path: str) -> Sequence[FileEntry]:
        sandbox = self._get_sandbox(sandbox_id)
        try:
            entries = sandbox.files.list(path)
        except NotFoundException as exc:
            raise NotFoundError(
                f"Directory not found in sandbox {sandbox_id}: {path}"
            ) from exc
        return [self._to_entry(entry) for entry in entries]

    def mkdirs(self, sandbox_id: str, path: str) -> None:
        self._get_sandbox(sandbox_id).files.make_dir(path)

    def _get_sandbox(self, sandbox_id: str, refresh: bool = False) -> Sandbox:
        with self._lock:
            sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is not None and not refresh:
            return sandbox
        try:
            sandbox = Sandbox.connect(
                sandbox_id,
                api_key=self._api_key,
                timeout=self._timeout_ms // 1000,
            )
        except NotFoundException as exc:
            raise NotFoundError(f"Sandbox not found: {sandbox_id}") from exc
        with self._lock:
            self._sandboxes[sandbox_id] = sandbox
        return sandbox

    @staticmethod
    def _to_entry(entry: Any) -> FileEntry:
        modified = getattr(entry, "modified_time", None)
        return FileEntry(
            name=entry.name,
            is_dir=getattr(entry.type, "value", entry.type) == "dir",
            size=getattr(entry, "size", 0) or 0,
            mod_time=modified.timestamp() if modified is not None else None,
        )
