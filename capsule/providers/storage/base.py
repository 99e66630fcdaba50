"""Durable object storage interface for published bundles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence


@dataclass(frozen=True)
class StoredObject:
    key: str
    url: str
    size: int


class ObjectStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        ...

    def list(self, prefix: str) -> Sequence[StoredObject]:
        ...

    def delete(self, key: str) -> None:
        ...
