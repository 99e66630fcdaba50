"""Version control backends used for checkpoints and restores."""

from capsule.providers.vcs.base import LogEntry, VersionControlBackend
from capsule.providers.vcs.git import SandboxGitBackend
from capsule.providers.vcs.memory import InMemoryVersionControl

__all__ = [
    "InMemoryVersionControl",
    "LogEntry",
    "SandboxGitBackend",
    "VersionControlBackend",
]
