"""SCM provider interface."""

from __future__ import annotations

from typing import Protocol

from capsule.models.scm import RepositoryInfo


class ScmProvider(Protocol):
    def validate_auth(self) -> None:
        ...

    def ensure_repository(self, name: str, private: bool = True) -> RepositoryInfo:
        ...

    def auth(self) -> dict[str, str]:
        ...
