"""SCM provider implementations and interfaces."""

from capsule.providers.scm.base import ScmProvider
from capsule.providers.scm.github import GitHubProvider

__all__ = ["GitHubProvider", "ScmProvider"]
