"""Process-wide service graph built once from ``Settings``."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from capsule.agent.executor import AgentExecutor
from capsule.agent.runtime import AgentRuntime, LiteLLMAgentRuntime
from capsule.config import Settings
from capsule.errors import ConfigurationError
from capsule.providers.llm.litellm_client import LiteLLMClient
from capsule.providers.sandbox.base import SandboxProvider
from capsule.providers.sandbox.local import LocalProvider
from capsule.providers.scm.base import ScmProvider
from capsule.providers.scm.github import GitHubProvider
from capsule.providers.storage.base import ObjectStore
from capsule.providers.storage.memory import InMemoryObjectStore
from capsule.providers.vcs.base import VersionControlBackend
from capsule.providers.vcs.git import SandboxGitBackend
from capsule.sessions import SandboxSessionManager
from capsule.store.base import CommitStore, ProjectStore
from capsule.store.memory import InMemoryCommitStore, InMemoryProjectStore
from capsule.streaming.broadcaster import FileChangeBroadcaster
from capsule.streaming.watcher import SandboxFileWatcher, backoff_schedule
from capsule.versioning.bundle import BundleBuilder
from capsule.versioning.checkpoint import CheckpointEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    provider: SandboxProvider
    sessions: SandboxSessionManager
    projects: ProjectStore
    commits: CommitStore
    object_store: ObjectStore
    broadcaster: FileChangeBroadcaster
    watcher: SandboxFileWatcher
    executor: AgentExecutor
    checkpoints: CheckpointEngine
    bundler: BundleBuilder


def build_sandbox_provider(settings: Settings) -> SandboxProvider:
    if settings.sandbox_backend == "local":
        return LocalProvider(
            base_dir=settings.sandbox_base_dir,
            working_dir=settings.default_cwd,
            timeout_ms=settings.sandbox_timeout_ms,
            request_timeout_ms=settings.sandbox_request_timeout_ms,
        )
    if settings.sandbox_backend == "e2b":
        from capsule.providers.sandbox.e2b import E2BProvider

        return E2BProvider(
            api_key=settings.e2b_api_key,
            working_dir=settings.default_cwd,
            timeout_ms=settings.sandbox_timeout_ms,
            request_timeout_ms=settings.sandbox_request_timeout_ms,
        )
    raise ConfigurationError(f"Unknown sandbox backend: {settings.sandbox_backend}")


def build_object_store(settings: Settings) -> ObjectStore:
    if settings.object_store == "memory":
        return InMemoryObjectStore()
    if settings.object_store == "s3":
        from capsule.providers.storage.s3 import S3ObjectStore

        return S3ObjectStore(
            bucket=settings.s3_bucket, public_base_url=settings.s3_public_base_url
        )
    raise ConfigurationError(f"Unknown object store: {settings.object_store}")


def build_stores(settings: Settings) -> tuple[ProjectStore, CommitStore]:
    if not settings.database_url:
        return InMemoryProjectStore(), InMemoryCommitStore()
    from capsule.store.sql import SqlCommitStore, SqlProjectStore, create_session_factory

    session_factory = create_session_factory(settings.database_url)
    return SqlProjectStore(session_factory), SqlCommitStore(session_factory)


def build_scm(settings: Settings) -> ScmProvider | None:
    if not settings.github_token:
        logger.info("No GitHub token configured; commits will not be pushed")
        return None
    return GitHubProvider(token=settings.github_token, owner=settings.github_owner)


def build_services(
    settings: Settings,
    *,
    provider: SandboxProvider | None = None,
    runtime: AgentRuntime | None = None,
    vcs: VersionControlBackend | None = None,
    object_store: ObjectStore | None = None,
    projects: ProjectStore | None = None,
    commits: CommitStore | None = None,
    scm: ScmProvider | None = None,
) -> Services:
    """Wire every service from ``settings``; keyword arguments replace single parts."""
    provider = provider or build_sandbox_provider(settings)
    if projects is None or commits is None:
        default_projects, default_commits = build_stores(settings)
        projects = projects or default_projects
        commits = commits or default_commits
    object_store = object_store or build_object_store(settings)
    sessions = SandboxSessionManager(provider, projects)
    broadcaster = FileChangeBroadcaster()
    runtime = runtime or LiteLLMAgentRuntime(
        LiteLLMClient(settings.models_config, settings.default_model)
    )
    return Services(
        settings=settings,
        provider=provider,
        sessions=sessions,
        projects=projects,
        commits=commits,
        object_store=object_store,
        broadcaster=broadcaster,
        watcher=SandboxFileWatcher(
            provider, broadcaster, schedule=backoff_schedule(settings.watch_interval_s)
        ),
        executor=AgentExecutor(sessions, runtime, settings, broadcaster),
        checkpoints=CheckpointEngine(
            vcs or SandboxGitBackend(provider),
            commits,
            projects,
            sessions,
            scm=scm if scm is not None else build_scm(settings),
            commit_list_cap=settings.commit_list_cap,
        ),
        bundler=BundleBuilder(object_store, commits),
    )
