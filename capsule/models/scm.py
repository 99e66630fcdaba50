"""Data models for SCM interactions."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RepositoryInfo:
    full_name: str
    clone_url: str
    html_url: str
    default_branch: str
