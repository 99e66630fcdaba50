"""Process-wide fan-out of file change events to live connections."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Iterator, Optional, Protocol

from capsule.models.events import FileChangeEvent

logger = logging.getLogger(__name__)


class Connection(Protocol):
    def write(self, data: bytes) -> None:
        ...

    def close(self) -> None:
        ...

    def abort(self, reason: str | None = None) -> None:
        ...


class ConnectionClosed(Exception):
    pass


class QueueConnection(Connection):
    """Connection whose frames are drained by a streaming HTTP response.

    Writes never block the producer; a client that stops reading is dropped
    once ``max_pending`` frames are queued.
    """

    def __init__(self, max_pending: int = 1000) -> None:
        self._queue: queue.Queue[Optional[bytes]] = queue.Queue(maxsize=max_pending)
        self._closed = threading.Event()
        self.abort_reason: str | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def write(self, data: bytes) -> None:
        if self._closed.is_set():
            raise ConnectionClosed("connection is closed")
        try:
            self._queue.put_nowait(data)
        except queue.Full as exc:
            raise ConnectionClosed("client is not reading") from exc

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass

    def abort(self, reason: str | None = None) -> None:
        self.abort_reason = reason
        self.close()

    def frames(self, poll_s: float = 15.0) -> Iterator[bytes]:
        """Yield queued frames, with SSE comments as keep-alives while idle."""
        while True:
            try:
                item = self._queue.get(timeout=poll_s)
            except queue.Empty:
                if self._closed.is_set():
                    return
                yield b": keep-alive\n\n"
                continue
            if item is None:
                return
            yield item


class FileChangeBroadcaster:
    def __init__(self) -> None:
        self._connections: dict[str, set[Connection]] = {}
        self._lock = threading.Lock()

    def add_connection(self, project_id: str, connection: Connection) -> None:
        # The connected frame goes out before registration so it is always first.
        try:
            connection.write(FileChangeEvent.connected(project_id).to_sse())
        except Exception as exc:
            logger.warning("Initial write failed for project %s: %s", project_id, exc)
            connection.close()
            return
        with self._lock:
            self._connections.setdefault(project_id, set()).add(connection)
        logger.info("File change stream connected for project %s", project_id)

    def remove_connection(self, project_id: str, connection: Connection) -> None:
        with self._lock:
            connections = self._connections.get(project_id)
            if connections is None or connection not in connections:
                return
            connections.discard(connection)
            if not connections:
                del self._connections[project_id]
        logger.info("File change stream disconnected for project %s", project_id)

    def broadcast(self, project_id: str, event: FileChangeEvent) -> int:
        """Write ``event`` to every connection of ``project_id``.

        Returns the number of connections that received it.
        """
        with self._lock:
            snapshot = list(self._connections.get(project_id, ()))
        if not snapshot:
            return 0
        frame = event.to_sse()
        delivered = 0
        for connection in snapshot:
            try:
                connection.write(frame)
            except Exception as exc:
                logger.warning(
                    "Dropping file change connection for project %s: %s", project_id, exc
                )
                self._drop(project_id, connection)
                continue
            delivered += 1
        return delivered

    def connection_count(self, project_id: str) -> int:
        with self._lock:
            return len(self._connections.get(project_id, ()))

    def active_projects(self) -> list[str]:
        with self._lock:
            return sorted(self._connections)

    def _drop(self, project_id: str, connection: Connection) -> None:
        self.remove_connection(project_id, connection)
        try:
            connection.close()
        except Exception as exc:
            logger.debug("Closing dropped connection failed: %s", exc)
