"""Sandbox provider interface."""

from __future__ import annotations

from typing import Protocol, Sequence

from capsule.models.sandbox import ExecResult, FileEntry, SandboxInfo


class SandboxProvider(Protocol):
    def connect(self, sandbox_id: str) -> SandboxInfo:
        ...

    def pause(self, sandbox_id: str) -> str:
        ...

    def exec(
        self,
        sandbox_id: str,
        command: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_s: int | None = None,
    ) -> ExecResult:
        ...

    def read_file(self, sandbox_id: str, path: str) -> bytes:
        ...

    def write_file(
        self,
        sandbox_id: str,
        path: str,
        data: bytes,
        mode: int | None = None,
        append: bool = False,
    ) -> None:
        ...

    def list_files(self, sandbox_id: str, path: str) -> Sequence[FileEntry]:
        ...

    def mkdirs(self, sandbox_id: str, path: str) -> None:
        ...
