"""Local sandbox provider backed by directories on the host."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import shutil
import subprocess
import tempfile
import threading
import time
from typing import Sequence
from uuid import uuid4

from capsule.errors import NotFoundError, ValidationError
from capsule.models.sandbox import ExecResult, FileEntry, SandboxInfo, SandboxStatus
from capsule.providers.sandbox.base import SandboxProvider

logger = logging.getLogger(__name__)


@dataclass
class _SandboxRecord:
    sandbox_id: str
    root: Path
    working_dir: str
    status: SandboxStatus = SandboxStatus.ACTIVE


class LocalProvider(SandboxProvider):
    """Runs commands with ``subprocess`` inside a per-sandbox directory.

    Absolute sandbox paths such as ``/home/user/app`` are mapped under the
    sandbox root so callers can use the same paths as on a remote sandbox.
    """

    def __init__(
        self,
        base_dir: str | None = None,
        working_dir: str = "/home/user/app",
        timeout_ms: int = 3_600_000,
        request_timeout_ms: int = 60_000,
    ) -> None:
        self._base_dir = Path(base_dir) if base_dir else Path(
            tempfile.mkdtemp(prefix="capsule-local-")
        )
        self._working_dir = working_dir
        self._timeout_ms = timeout_ms
        self._request_timeout_ms = request_timeout_ms
        self._sandboxes: dict[str, _SandboxRecord] = {}
        self._lock = threading.Lock()

    def create_sandbox(self, name: str = "sandbox") -> str:
        sandbox_id = f"{name}-{uuid4().hex[:8]}"
        root = self._base_dir / sandbox_id
        root.mkdir(parents=True, exist_ok=False)
        record = _SandboxRecord(
            sandbox_id=sandbox_id, root=root, working_dir=self._working_dir
        )
        with self._lock:
            self._sandboxes[sandbox_id] = record
        self.mkdirs(sandbox_id, self._working_dir)
        return sandbox_id

    def delete_sandbox(self, sandbox_id: str) -> None:
        record = self._get_record(sandbox_id)
        shutil.rmtree(record.root, ignore_errors=True)
        with self._lock:
            self._sandboxes.pop(sandbox_id, None)

    def host_path(self, sandbox_id: str, path: str) -> Path:
        return self._resolve_path(sandbox_id, path)

    def connect(self, sandbox_id: str) -> SandboxInfo:
        record = self._get_record(sandbox_id)
        if record.status == SandboxStatus.PAUSED:
            record.status = SandboxStatus.ACTIVE
        return self._info(record)

    def pause(self, sandbox_id: str) -> str:
        record = self._get_record(sandbox_id)
        record.status = SandboxStatus.PAUSED
        return record.sandbox_id

    def exec(
        self,
        sandbox_id: str,
        command: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_s: int | None = None,
    ) -> ExecResult:
        root = self._get_record(sandbox_id).root
        workdir = self._resolve_path(sandbox_id, cwd) if cwd else root
        start = time.monotonic()
        try:
            process = subprocess.run(
                list(command),
                cwd=workdir,
                env=self._merge_env(env),
                capture_output=True,
                text=True,
                timeout=timeout_s,
                check=False,
            )
        except FileNotFoundError as exc:
            # Same exit code a shell reports for an unknown command.
            return ExecResult(exit_code=127, stdout="", stderr=str(exc), duration_ms=0)
        duration_ms = int((time.monotonic() - start) * 1000)
        return ExecResult(
            exit_code=process.returncode,
            stdout=process.stdout,
            stderr=process.stderr,
            duration_ms=duration_ms,
        )

    def read_file(self, sandbox_id: str, path: str) -> bytes:
        target = self._resolve_path(sandbox_id, path)
        if not target.is_file():
            raise NotFoundError(f"File not found in sandbox {sandbox_id}: {path}")
        return target.read_bytes()

    def write_file(
        self,
        sandbox_id: str,
        path: str,
        data: bytes,
        mode: int | None = None,
        append: bool = False,
    ) -> None:
        target = self._resolve_path(sandbox_id, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        write_mode = "ab" if append else "wb"
        with target.open(write_mode) as handle:
            handle.write(data)
        if mode is not None:
            os.chmod(target, mode)

    def list_files(self, sandbox_id: str, path: str) -> Sequence[FileEntry]:
        target = self._resolve_path(sandbox_id, path)
        if not target.is_dir():
            raise NotFoundError(f"Directory not found in sandbox {sandbox_id}: {path}")
        entries: list[FileEntry] = []
        for entry in sorted(target.iterdir()):
            stat_info = entry.stat()
            entries.append(
                FileEntry(
                    name=entry.name,
                    is_dir=entry.is_dir(),
                    size=stat_info.st_size,
                    mod_time=stat_info.st_mtime,
                )
            )
        return entries

    def mkdirs(self, sandbox_id: str, path: str) -> None:
        target = self._resolve_path(sandbox_id, path)
        target.mkdir(parents=True, exist_ok=True)

    def _info(self, record: _SandboxRecord) -> SandboxInfo:
        return SandboxInfo(
            sandbox_id=record.sandbox_id,
            status=record.status,
            working_dir=record.working_dir,
            timeout_ms=self._timeout_ms,
            request_timeout_ms=self._request_timeout_ms,
        )

    def _get_record(self, sandbox_id: str) -> _SandboxRecord:
        with self._lock:
            record = self._sandboxes.get(sandbox_id)
        if record is None:
            raise NotFoundError(f"Unknown sandbox id: {sandbox_id}")
        return record

    def _resolve_path(self, sandbox_id: str, path: str) -> Path:
        root = self._get_record(sandbox_id).root.resolve()
        candidate = Path(path)
        if candidate.is_absolute():
            if candidate != root and root not in candidate.parents:
                candidate = root / candidate.relative_to(candidate.anchor)
        else:
            candidate = root / candidate
        resolved = candidate.resolve()
        if root != resolved and root not in resolved.parents:
            raise ValidationError(f"Path escapes sandbox: {path}", field="path")
        return resolved

    def _merge_env(self, env: dict[str, str] | None) -> dict[str, str]:
        merged = os.environ.copy()
        if env:
            merged.update(env)
        return merged
