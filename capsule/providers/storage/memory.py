"""In-memory object store."""

from __future__ import annotations

import threading
from typing import Sequence

from capsule.providers.storage.base import ObjectStore, StoredObject


class InMemoryObjectStore(ObjectStore):
    def __init__(self, base_url: str = "memory://bundles") -> None:
        self._base_url = base_url.rstrip("/")
        self._objects: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        with self._lock:
            self._objects[key] = (data, content_type)
        return StoredObject(key=key, url=self._url(key), size=len(data))

    def list(self, prefix: str) -> Sequence[StoredObject]:
        with self._lock:
            items = sorted(self._objects.items())
        return [
            StoredObject(key=key, url=self._url(key), size=len(data))
            for key, (data, _) in items
            if key.startswith(prefix)
        ]

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def get(self, key: str) -> bytes | None:
        with self._lock:
            item = self._objects.get(key)
        return item[0] if item else None

    def content_type(self, key: str) -> str | None:
        with self._lock:
            item = self._objects.get(key)
        return item[1] if item else None

    def _url(self, key: str) -> str:
        return f"{self._base_url}/{key}"
