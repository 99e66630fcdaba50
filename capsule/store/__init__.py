"""Project and commit persistence."""

from capsule.store.base import CommitStore, ProjectStore
from capsule.store.memory import InMemoryCommitStore, InMemoryProjectStore

__all__ = [
    "CommitStore",
    "InMemoryCommitStore",
    "InMemoryProjectStore",
    "ProjectStore",
]
