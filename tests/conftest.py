from __future__ import annotations

import asyncio
from pathlib import Path
import threading
from typing import Any, AsyncIterator, Sequence

import pytest

from capsule.config import Settings
from capsule.errors import ConfigurationError
from capsule.providers.sandbox.local import LocalProvider
from capsule.store.memory import InMemoryCommitStore, InMemoryProjectStore
from capsule.sessions import SandboxSessionManager


class ScriptedRuntime:
    """Agent runtime that replays one script per ``stream`` call.

    Script items are yielded as messages, raised when they are exceptions,
    and slept on when they are numbers.
    """

    def __init__(self, *scripts: Sequence[Any], config_error: bool = False) -> None:
        self._scripts = [list(script) for script in scripts]
        self._config_error = config_error
        self.calls = 0
        self.closed = 0
        self.handles: list[Any] = []

    def check(self, spec) -> None:
        if self._config_error:
            raise ConfigurationError("No model configured")

    async def stream(self, spec, sandbox, image_paths, cancel) -> AsyncIterator[Any]:
        self.calls += 1
        self.handles.append(sandbox)
        script = self._scripts.pop(0) if self._scripts else []
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                if isinstance(item, (int, float)):
                    await asyncio.sleep(item)
                    continue
                if callable(item):
                    item(sandbox)
                    continue
                yield item
        finally:
            self.closed += 1


class RecordingConnection:
    def __init__(self, fail: bool = False) -> None:
        self.frames: list[bytes] = []
        self.fail = fail
        self.closed = False
        self.abort_reason: str | None = None
        self._lock = threading.Lock()

    def write(self, data: bytes) -> None:
        if self.fail or self.closed:
            raise ConnectionError("broken pipe")
        with self._lock:
            self.frames.append(data)

    def close(self) -> None:
        self.closed = True

    def abort(self, reason: str | None = None) -> None:
        self.abort_reason = reason
        self.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        images_dir=str(tmp_path / "images"),
        env_path=str(tmp_path / "missing.env"),
        heartbeat_interval_s=0.05,
        missed_ticks_threshold=3,
        cancel_grace_s=0.2,
        stream_retry_limit=2,
        models_config=str(tmp_path / "models.yaml"),
    )


@pytest.fixture
def provider(tmp_path: Path) -> LocalProvider:
    return LocalProvider(base_dir=str(tmp_path / "sandboxes"))


@pytest.fixture
def sandbox_id(provider: LocalProvider) -> str:
    return provider.create_sandbox("test")


@pytest.fixture
def projects() -> InMemoryProjectStore:
    return InMemoryProjectStore()


@pytest.fixture
def commits() -> InMemoryCommitStore:
    return InMemoryCommitStore()


@pytest.fixture
def sessions(provider: LocalProvider, projects: InMemoryProjectStore) -> SandboxSessionManager:
    return SandboxSessionManager(provider, projects)
