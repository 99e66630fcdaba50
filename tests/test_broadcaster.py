from __future__ import annotations

import json
import threading

import pytest

from conftest import RecordingConnection

from capsule.models.events import FileChangeEvent, FileChangeKind
from capsule.streaming.broadcaster import ConnectionClosed, FileChangeBroadcaster, QueueConnection


def _decode(frame: bytes) -> dict:
    text = frame.decode("utf-8")
    assert text.startswith("data: ") and text.endswith("\n\n")
    return json.loads(text[len("data: "):])


def _changed(project_id: str, path: str = "app/index.tsx") -> FileChangeEvent:
    return FileChangeEvent(project_id=project_id, kind=FileChangeKind.CHANGED, path=path)


def test_first_frame_is_connected_event():
    broadcaster = FileChangeBroadcaster()
    connection = RecordingConnection()

    broadcaster.add_connection("P1", connection)

    payload = _decode(connection.frames[0])
    assert payload["type"] == "connected"
    assert payload["projectId"] == "P1"
    assert "path" not in payload


def test_broadcast_reaches_only_connections_of_that_project():
    broadcaster = FileChangeBroadcaster()
    first, second, other = RecordingConnection(), RecordingConnection(), RecordingConnection()
    broadcaster.add_connection("P1", first)
    broadcaster.add_connection("P1", second)
    broadcaster.add_connection("P2", other)

    delivered = broadcaster.broadcast("P1", _changed("P1"))

    assert delivered == 2
    for connection in (first, second):
        assert len(connection.frames) == 2
        payload = _decode(connection.frames[1])
        assert payload["type"] == "changed"
        assert payload["path"] == "app/index.tsx"
    assert len(other.frames) == 1


def test_broadcast_without_connections_is_a_no_op():
    assert FileChangeBroadcaster().broadcast("nobody", _changed("nobody")) == 0


def test_remove_connection_is_idempotent_and_prunes_bucket():
    broadcaster = FileChangeBroadcaster()
    connection = RecordingConnection()
    broadcaster.add_connection("P1", connection)

    broadcaster.remove_connection("P1", connection)
    broadcaster.remove_connection("P1", connection)
    broadcaster.remove_connection("never-seen", connection)

    assert broadcaster.connection_count("P1") == 0
    assert broadcaster.active_projects() == []


def test_failed_write_drops_only_that_connection():
    broadcaster = FileChangeBroadcaster()
    healthy, broken = RecordingConnection(), RecordingConnection()
    broadcaster.add_connection("P1", healthy)
    broadcaster.add_connection("P1", broken)
    broken.fail = True

    assert broadcaster.broadcast("P1", _changed("P1")) == 1
    assert broken.closed
    assert broadcaster.connection_count("P1") == 1

    assert broadcaster.broadcast("P1", _changed("P1", "b.ts")) == 1
    assert len(healthy.frames) == 3


def test_connection_failing_initial_write_is_not_registered():
    broadcaster = FileChangeBroadcaster()
    connection = RecordingConnection(fail=True)

    broadcaster.add_connection("P1", connection)

    assert connection.closed
    assert broadcaster.connection_count("P1") == 0


def test_concurrent_add_remove_broadcast():
    broadcaster = FileChangeBroadcaster()
    errors: list[BaseException] = []
    stable = RecordingConnection()
    broadcaster.add_connection("P1", stable)

    def churn() -> None:
        try:
            for _ in range(200):
                connection = RecordingConnection()
                broadcaster.add_connection("P1", connection)
                broadcaster.remove_connection("P1", connection)
        except BaseException as exc:
            errors.append(exc)

    def publish() -> None:
        try:
            for index in range(200):
                broadcaster.broadcast("P1", _changed("P1", f"f{index}.ts"))
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=churn) for _ in range(4)]
    threads += [threading.Thread(target=publish) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert broadcaster.connection_count("P1") == 1
    assert len(stable.frames) == 1 + 400


def test_queue_connection_yields_frames_until_closed():
    connection = QueueConnection()
    connection.write(b"data: one\n\n")
    connection.write(b"data: two\n\n")
    connection.close()

    assert list(connection.frames(poll_s=0.01)) == [b"data: one\n\n", b"data: two\n\n"]


def test_full_queue_still_drains_after_close():
    connection = QueueConnection(max_pending=1)
    connection.write(b"data: last\n\n")
    connection.close()

    assert list(connection.frames(poll_s=0.01)) == [b"data: last\n\n"]


def test_queue_connection_rejects_writes_when_full_or_closed():
    connection = QueueConnection(max_pending=1)
    connection.write(b"x")
    with pytest.raises(ConnectionClosed):
        connection.write(b"y")

    connection.abort("shutting down")
    assert connection.closed
    assert connection.abort_reason == "shutting down"
