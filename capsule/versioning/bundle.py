"""Build a static app bundle in the sandbox and publish it with an Expo-style manifest."""

from __future__ import annotations

import base64
from datetime import datetime, timezone
import hashlib
import json
import logging
import posixpath
import shlex
from typing import Any, Sequence
import uuid

from capsule.errors import CapsuleError, CommandError
from capsule.models.versioning import BundleManifest, BundleResult, Commit
from capsule.providers.storage.base import ObjectStore
from capsule.sessions import SandboxHandle
from capsule.store.base import CommitStore

logger = logging.getLogger(__name__)

DEFAULT_EXPORT_COMMAND = "npx expo export --platform ios --output-dir dist-static"

_CONTENT_TYPES = {
    ".js": "application/javascript",
    ".hbc": "application/javascript",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
}
_LAUNCH_SUFFIXES = (".js", ".hbc")
_EXPORT_METADATA = ("metadata.json", "assetmap.json")


def content_type_for(path: str) -> str:
    return _CONTENT_TYPES.get(posixpath.splitext(path)[1].lower(), "application/octet-stream")


def asset_hash(data: bytes) -> str:
    """SHA-256 digest in unpadded base64url form."""
    digest = hashlib.sha256(data).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class BundleBuilder:
    def __init__(
        self,
        store: ObjectStore,
        commits: CommitStore,
        export_command: str = DEFAULT_EXPORT_COMMAND,
        output_dir: str = "dist-static",
        platform: str = "ios",
        runtime_version: str = "1.0.0",
        export_timeout_s: int = 600,
    ) -> None:
        self._store = store
        self._commits = commits
        self._export_command = export_command
        self._output_dir = output_dir.strip("/")
        self._platform = platform
        self._runtime_version = runtime_version
        self._export_timeout_s = export_timeout_s

    def build_static_bundle(
        self,
        handle: SandboxHandle,
        project_id: str,
        commit_sha: str,
        note: str = "Static bundle build",
    ) -> BundleResult:
        """Export, upload and record a bundle for ``commit_sha``.

        Failures are returned in the result rather than raised so that a
        commit never depends on its bundle.
        """
        try:
            return self._build(handle, project_id, commit_sha, note)
        except CapsuleError as exc:
            logger.error("Bundle build for %s@%s failed: %s", project_id, commit_sha[:12], exc)
            return BundleResult(success=False, commit_id=commit_sha, error=str(exc))

    def _build(
        self, handle: SandboxHandle, project_id: str, commit_sha: str, note: str
    ) -> BundleResult:
        logger.info("Building static bundle for %s@%s", project_id, commit_sha[:12])
        export = handle.exec(
            shlex.split(self._export_command),
            cwd=handle.working_dir,
            timeout_s=self._export_timeout_s,
        )
        if not export.ok:
            raise CommandError(
                f"Bundle export failed: {export.stderr.strip() or export.stdout.strip()}",
                exit_code=export.exit_code,
            )

        output_root = posixpath.join(handle.working_dir, self._output_dir)
        files = self._list_outputs(handle, output_root)
        launch_path = _find_launch_asset(files)
        if launch_path is None:
            raise CommandError("Bundle export produced no JavaScript bundle")

        prefix = f"bundles/{project_id}/{commit_sha}"
        urls: dict[str, str] = {}
        contents: dict[str, bytes] = {}
        for relative in files:
            data = handle.read_file(posixpath.join(output_root, relative))
            stored = self._store.put(f"{prefix}/{relative}", data, content_type_for(relative))
            urls[relative] = stored.url
            contents[relative] = data

        manifest_doc = self._manifest_document(launch_path, urls, contents, files)
        manifest_key = f"{prefix}/{self._platform}/manifest.json"
        manifest_obj = self._store.put(
            manifest_key,
            json.dumps(manifest_doc, indent=2).encode("utf-8"),
            "application/json",
        )
        urls[f"{self._platform}/manifest.json"] = manifest_obj.url

        if self._commits.set_bundle_url(project_id, commit_sha, manifest_obj.url) is None:
            self._commits.add(
                Commit(
                    id=uuid.uuid4().hex,
                    project_id=project_id,
                    github_sha=commit_sha,
                    user_message=note,
                    bundle_url=manifest_obj.url,
                )
            )
        logger.info(
            "Published %d bundle files for %s@%s", len(files), project_id, commit_sha[:12]
        )
        return BundleResult(
            success=True,
            commit_id=commit_sha,
            manifest_url=manifest_obj.url,
            bundle_url=urls[launch_path],
            manifest=BundleManifest(project_id=project_id, commit_sha=commit_sha, files=urls),
        )

    def _list_outputs(self, handle: SandboxHandle, output_root: str) -> list[str]:
        listing = handle.exec(["find", ".", "-type", "f"], cwd=output_root, timeout_s=60)
        if not listing.ok:
            raise CommandError(
                f"Could not list bundle output: {listing.stderr.strip()}",
                exit_code=listing.exit_code,
            )
        paths = []
        for line in listing.stdout.splitlines():
            path = line.strip()
            if path.startswith("./"):
                path = path[2:]
            if path:
                paths.append(path)
        return sorted(paths)

    def _manifest_document(
        self,
        launch_path: str,
        urls: dict[str, str],
        contents: dict[str, bytes],
        files: Sequence[str],
    ) -> dict[str, Any]:
        assets = []
        for relative in files:
            if relative == launch_path or relative in _EXPORT_METADATA:
                continue
            extension = posixpath.splitext(relative)[1].lstrip(".")
            assets.append(
                {
                    "hash": asset_hash(contents[relative]),
                    "key": posixpath.basename(relative),
                    "contentType": content_type_for(relative),
                    "fileExtension": extension,
                    "url": urls[relative],
                }
            )
        return {
            "id": str(uuid.uuid4()),
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "runtimeVersion": self._runtime_version,
            "launchAsset": {
                "hash": asset_hash(contents[launch_path]),
                "key": "index",
                "contentType": "application/javascript",
                "url": urls[launch_path],
            },
            "assets": assets,
            "metadata": {
                "bundler": "metro",
                "platform": self._platform,
                "assetsCount": str(len(assets)),
            },
        }


def _find_launch_asset(files: Sequence[str]) -> str | None:
    candidates = [path for path in files if path.endswith(_LAUNCH_SUFFIXES)]
    for path in candidates:
        if "/js/" in f"/{path}":
            return path
    return candidates[0] if candidates else None
