"""Process configuration read from the environment and an optional YAML file."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from capsule.errors import ConfigurationError

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | int = "INFO") -> None:
    logging.basicConfig(level=level, format=_LOG_FORMAT)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    default_cwd: str = "/home/user/app"
    images_dir: str = "/tmp/capsule-images"
    env_path: str = "/claude-sdk/.env"
    heartbeat_interval_s: float = 30.0
    missed_ticks_threshold: int = 3
    stream_retry_limit: int = 2
    cancel_grace_s: float = 5.0
    commit_list_cap: int = 50
    sandbox_backend: str = "local"
    sandbox_base_dir: str | None = None
    sandbox_timeout_ms: int = 3_600_000
    sandbox_request_timeout_ms: int = 60_000
    e2b_api_key: str | None = None
    object_store: str = "memory"
    s3_bucket: str = "capsule-bundles"
    s3_public_base_url: str | None = None
    database_url: str = ""
    github_token: str | None = None
    github_owner: str | None = None
    models_config: str = "config/models.yaml"
    default_model: str | None = None
    bundle_keep_count: int = 5
    watch_interval_s: float = 5.0
    deploy_command: str = "npx convex deploy"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            default_cwd=os.environ.get("CAPSULE_DEFAULT_CWD", cls.default_cwd),
            images_dir=os.environ.get("CAPSULE_IMAGES_DIR", cls.images_dir),
            env_path=os.environ.get("CAPSULE_ENV_PATH", cls.env_path),
            heartbeat_interval_s=_env_float(
                "CAPSULE_HEARTBEAT_INTERVAL_S", cls.heartbeat_interval_s
            ),
            missed_ticks_threshold=_env_int(
                "CAPSULE_MISSED_TICKS_THRESHOLD", cls.missed_ticks_threshold
            ),
            stream_retry_limit=_env_int(
                "CAPSULE_STREAM_RETRY_LIMIT", cls.stream_retry_limit
            ),
            cancel_grace_s=_env_float("CAPSULE_CANCEL_GRACE_S", cls.cancel_grace_s),
            commit_list_cap=_env_int("CAPSULE_COMMIT_LIST_CAP", cls.commit_list_cap),
            sandbox_backend=os.environ.get("SANDBOX_BACKEND", cls.sandbox_backend),
            sandbox_base_dir=os.environ.get("SANDBOX_BASE_DIR") or None,
            sandbox_timeout_ms=_env_int("SANDBOX_TIMEOUT_MS", cls.sandbox_timeout_ms),
            sandbox_request_timeout_ms=_env_int(
                "SANDBOX_REQUEST_TIMEOUT_MS", cls.sandbox_request_timeout_ms
            ),
            e2b_api_key=os.environ.get("E2B_API_KEY") or None,
            object_store=os.environ.get("CAPSULE_OBJECT_STORE", cls.object_store),
            s3_bucket=os.environ.get("CAPSULE_S3_BUCKET", cls.s3_bucket),
            s3_public_base_url=os.environ.get("CAPSULE_S3_PUBLIC_BASE_URL") or None,
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            github_token=os.getenv("GITHUB_PAT") or os.getenv("GITHUB_TOKEN"),
            github_owner=os.environ.get("GITHUB_OWNER") or None,
            models_config=os.environ.get("CAPSULE_MODELS_CONFIG", cls.models_config),
            default_model=os.environ.get("CAPSULE_DEFAULT_MODEL") or None,
            bundle_keep_count=_env_int(
                "CAPSULE_BUNDLE_KEEP_COUNT", cls.bundle_keep_count
            ),
            watch_interval_s=_env_float(
                "CAPSULE_WATCH_INTERVAL_S", cls.watch_interval_s
            ),
            deploy_command=os.environ.get("CAPSULE_DEPLOY_COMMAND", cls.deploy_command),
            log_level=os.environ.get("CAPSULE_LOG_LEVEL", cls.log_level),
        )
        overlay = os.environ.get("CAPSULE_CONFIG")
        if overlay:
            settings = settings.merged_with_file(overlay)
        return settings

    def merged_with_file(self, path: str) -> "Settings":
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file must contain a mapping: {path}")
        known = {item.name for item in fields(self)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown settings in {path}: {', '.join(unknown)}")
        overrides: dict[str, Any] = dict(data)
        return replace(self, **overrides)
