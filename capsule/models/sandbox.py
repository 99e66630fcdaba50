"""Data models for sandbox interactions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SandboxStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DESTROYED = "destroyed"


@dataclass(frozen=True)
class SandboxInfo:
    sandbox_id: str
    status: SandboxStatus
    working_dir: str
    timeout_ms: int
    request_timeout_ms: int


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class FileEntry:
    name: str
    is_dir: bool
    size: int
    mod_time: Optional[float]


@dataclass(frozen=True)
class Liveness:
    alive: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class PauseResult:
    sandbox_id: str
    paused_sandbox_id: str
    caveat: Optional[str] = None

    @property
    def success(self) -> bool:
        return True
