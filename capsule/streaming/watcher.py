"""Poll sandboxes for modified files and broadcast them to observers."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
import threading
from typing import Sequence

from capsule.models.events import FileChangeEvent, FileChangeKind
from capsule.providers.sandbox.base import SandboxProvider
from capsule.streaming.broadcaster import FileChangeBroadcaster

logger = logging.getLogger(__name__)

_IGNORED_SEGMENTS = (".git/", "node_modules/", ".expo/", ".next/", "dist/", "build/")
_IGNORED_SUFFIXES = (".tmp", ".swp")
_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")

# (number of polls, seconds between them); the last entry repeats forever.
def backoff_schedule(base_s: float = 5.0) -> tuple[tuple[int, float], ...]:
    return ((6, base_s), (6, base_s * 3), (0, base_s * 6))


DEFAULT_SCHEDULE = backoff_schedule()


def is_ignored(path: str) -> bool:
    if not path or path.startswith("."):
        return True
    if "~" in path or path.endswith(_IGNORED_SUFFIXES):
        return True
    return any(segment in f"{path}/" for segment in _IGNORED_SEGMENTS)


def next_interval(schedule: Sequence[tuple[int, float]], poll_count: int) -> float:
    remaining = poll_count
    for count, interval in schedule:
        if count <= 0 or remaining < count:
            return interval
        remaining -= count
    return schedule[-1][1]


@dataclass
class _Watch:
    sandbox_id: str
    working_dir: str
    marker: str
    stop: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None
    polls: int = 0


class SandboxFileWatcher:
    def __init__(
        self,
        provider: SandboxProvider,
        broadcaster: FileChangeBroadcaster,
        schedule: Sequence[tuple[int, float]] = DEFAULT_SCHEDULE,
        max_files_per_poll: int = 100,
    ) -> None:
        self._provider = provider
        self._broadcaster = broadcaster
        self._schedule = tuple(schedule)
        self._max_files = max_files_per_poll
        self._watches: dict[str, _Watch] = {}
        self._lock = threading.Lock()

    def start_watching(
        self, project_id: str, sandbox_id: str, working_dir: str, background: bool = True
    ) -> None:
        self.stop_watching(project_id)
        marker = f"/tmp/capsule-watch-{_UNSAFE.sub('-', project_id)}"
        watch = _Watch(sandbox_id=sandbox_id, working_dir=working_dir, marker=marker)
        self._provider.exec(sandbox_id, ["touch", marker])
        if background:
            watch.thread = threading.Thread(
                target=self._loop,
                args=(project_id, watch),
                name=f"file-watch-{project_id}",
                daemon=True,
            )
        with self._lock:
            self._watches[project_id] = watch
        if watch.thread is not None:
            watch.thread.start()
        logger.info("Watching %s:%s for project %s", sandbox_id, working_dir, project_id)

    def stop_watching(self, project_id: str) -> None:
        with self._lock:
            watch = self._watches.pop(project_id, None)
        if watch is None:
            return
        watch.stop.set()
        if watch.thread is not None and watch.thread is not threading.current_thread():
            watch.thread.join(timeout=5)

    def stop_all(self) -> None:
        with self._lock:
            project_ids = list(self._watches)
        for project_id in project_ids:
            self.stop_watching(project_id)

    def is_watching(self, project_id: str) -> bool:
        with self._lock:
            return project_id in self._watches

    def poll_once(self, project_id: str) -> list[FileChangeEvent]:
        with self._lock:
            watch = self._watches.get(project_id)
        if watch is None:
            return []
        next_marker = f"{watch.marker}.next"
        script = (
            f"touch {next_marker} && "
            f"find . -type f -newer {watch.marker} 2>/dev/null | head -n {self._max_files}; "
            f"mv {next_marker} {watch.marker}"
        )
        result = self._provider.exec(
            watch.sandbox_id, ["sh", "-c", script], cwd=watch.working_dir, timeout_s=30
        )
        watch.polls += 1
        events: list[FileChangeEvent] = []
        for line in result.stdout.splitlines():
            path = line.strip()
            if path.startswith("./"):
                path = path[2:]
            if is_ignored(path):
                continue
            event = FileChangeEvent(
                project_id=project_id, kind=FileChangeKind.CHANGED, path=path
            )
            self._broadcaster.broadcast(project_id, event)
            events.append(event)
        return events

    def _loop(self, project_id: str, watch: _Watch) -> None:
        while not watch.stop.wait(next_interval(self._schedule, watch.polls)):
            try:
                self.poll_once(project_id)
            except Exception:
                logger.exception("File watch poll failed for project %s", project_id)
                watch.polls += 1
