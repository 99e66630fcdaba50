"""Provider package for sandbox, version control, storage, SCM and LLM integrations."""

from capsule.providers.llm.litellm_client import LiteLLMClient
from capsule.providers.sandbox import LocalProvider, SandboxProvider
from capsule.providers.scm import GitHubProvider, ScmProvider
from capsule.providers.storage import InMemoryObjectStore, ObjectStore
from capsule.providers.vcs import (
    InMemoryVersionControl,
    SandboxGitBackend,
    VersionControlBackend,
)

__all__ = [
    "GitHubProvider",
    "InMemoryObjectStore",
    "InMemoryVersionControl",
    "LiteLLMClient",
    "LocalProvider",
    "ObjectStore",
    "SandboxGitBackend",
    "SandboxProvider",
    "ScmProvider",
    "VersionControlBackend",
]
