"""Shared data models for the capsule agent subsystem."""

from capsule.models.agent import (
    AgentMessage,
    AssistantText,
    ExecutionSpec,
    ExecutorResult,
    MessageKind,
    RunComplete,
    RunError,
    RunState,
    ToolResult,
    ToolUse,
    messages_of_kind,
)
from capsule.models.events import FileChangeEvent, FileChangeKind
from capsule.models.sandbox import (
    ExecResult,
    FileEntry,
    Liveness,
    PauseResult,
    SandboxInfo,
    SandboxStatus,
)
from capsule.models.scm import RepositoryInfo
from capsule.models.versioning import (
    BundleManifest,
    BundleResult,
    CleanupResult,
    Commit,
    CommitResult,
    Project,
    ProjectStatus,
    RestoreResult,
)

__all__ = [
    "AgentMessage",
    "AssistantText",
    "BundleManifest",
    "BundleResult",
    "CleanupResult",
    "Commit",
    "CommitResult",
    "ExecResult",
    "ExecutionSpec",
    "ExecutorResult",
    "FileChangeEvent",
    "FileChangeKind",
    "FileEntry",
    "Liveness",
    "MessageKind",
    "PauseResult",
    "Project",
    "ProjectStatus",
    "RepositoryInfo",
    "RestoreResult",
    "RunComplete",
    "RunError",
    "RunState",
    "SandboxInfo",
    "SandboxStatus",
    "ToolResult",
    "ToolUse",
    "messages_of_kind",
]
