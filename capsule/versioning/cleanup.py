"""Delete published bundles of old commits."""

from __future__ import annotations

import logging

from capsule.errors import CapsuleError
from capsule.models.versioning import CleanupResult
from capsule.providers.storage.base import ObjectStore
from capsule.store.base import CommitStore

logger = logging.getLogger(__name__)

_SCAN_LIMIT = 10_000


def cleanup_project_bundles(
    project_id: str,
    commits: CommitStore,
    store: ObjectStore,
    keep: int = 5,
) -> CleanupResult:
    """Keep the newest ``keep`` commits and drop the rest with their bundles.

    A commit record is only deleted once all of its objects are gone.
    """
    history = list(commits.list_for_project(project_id, _SCAN_LIMIT))
    stale = history[max(keep, 0):]
    logger.info(
        "Bundle cleanup for %s: keeping %d commits, removing %d",
        project_id,
        len(history) - len(stale),
        len(stale),
    )
    deleted = 0
    freed = 0
    errors: list[str] = []
    for commit in stale:
        failed = False
        try:
            objects = store.list(f"bundles/{project_id}/{commit.github_sha}/")
        except CapsuleError as exc:
            errors.append(f"Failed to list bundle for {commit.github_sha}: {exc}")
            continue
        for item in objects:
            try:
                store.delete(item.key)
            except CapsuleError as exc:
                failed = True
                errors.append(f"Failed to delete {item.key}: {exc}")
                continue
            deleted += 1
            freed += item.size
        if not failed:
            commits.delete(commit.id)
    if errors:
        logger.warning("Bundle cleanup for %s had %d errors", project_id, len(errors))
    logger.info(
        "Bundle cleanup for %s deleted %d objects (%.2f MB)",
        project_id,
        deleted,
        freed / 1024 / 1024,
    )
    return CleanupResult(deleted_count=deleted, freed_bytes=freed, errors=tuple(errors))
