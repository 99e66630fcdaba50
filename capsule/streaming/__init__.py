"""Live file change streaming."""

from capsule.streaming.broadcaster import (
    Connection,
    ConnectionClosed,
    FileChangeBroadcaster,
    QueueConnection,
)
from capsule.streaming.watcher import SandboxFileWatcher

__all__ = [
    "Connection",
    "ConnectionClosed",
    "FileChangeBroadcaster",
    "QueueConnection",
    "SandboxFileWatcher",
]
