"""Object storage implementations and interfaces."""

from capsule.providers.storage.base import ObjectStore, StoredObject
from capsule.providers.storage.memory import InMemoryObjectStore

__all__ = ["InMemoryObjectStore", "ObjectStore", "StoredObject"]
