"""Read the sandbox asset manifest that records which files have been published."""

from __future__ import annotations

import json
import logging
import posixpath
from typing import Any

from capsule.errors import NotFoundError
from capsule.sessions import SandboxHandle

logger = logging.getLogger(__name__)

ASSET_MANIFEST = "assets/manifest.json"


def list_published_assets(
    handle: SandboxHandle, manifest_path: str = ASSET_MANIFEST
) -> list[dict[str, Any]]:
    """Return manifest entries that carry a durable ``blobUrl``.

    The manifest is a JSON object keyed by asset path. A missing or
    unreadable manifest means nothing has been published yet.
    """
    path = posixpath.join(handle.working_dir, manifest_path)
    try:
        raw = handle.read_file(path)
    except NotFoundError:
        logger.debug("No asset manifest at %s", path)
        return []
    try:
        manifest = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Asset manifest %s is not valid JSON: %s", path, exc)
        return []
    if not isinstance(manifest, dict):
        logger.warning("Asset manifest %s is not a JSON object", path)
        return []
    return [
        entry
        for entry in manifest.values()
        if isinstance(entry, dict) and entry.get("blobUrl")
    ]
