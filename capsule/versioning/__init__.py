"""Checkpoints, restores and published bundles."""

from capsule.versioning.assets import list_published_assets
from capsule.versioning.bundle import BundleBuilder
from capsule.versioning.checkpoint import CheckpointEngine, create_checkpoint_hook
from capsule.versioning.cleanup import cleanup_project_bundles

__all__ = [
    "BundleBuilder",
    "CheckpointEngine",
    "cleanup_project_bundles",
    "create_checkpoint_hook",
    "list_published_assets",
]
