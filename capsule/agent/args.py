"""Resolve run requests into a validated ``ExecutionSpec``.

Run requests arrive either as ``--key=value`` command line tokens or as a
JSON body. Both go through the same field table so that required fields,
defaults and the system prompt precedence are identical for every caller.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import Any, Mapping, Sequence

from capsule.errors import ValidationError
from capsule.models.agent import ExecutionSpec

logger = logging.getLogger(__name__)

DEFAULT_CWD = "/home/user/app"


@dataclass(frozen=True)
class _ArgField:
    name: str
    flag: str
    key: str
    kind: str = "str"
    required: bool = False


_FIELDS: tuple[_ArgField, ...] = (
    _ArgField("prompt", "--prompt", "prompt", required=True),
    _ArgField("cwd", "--cwd", "cwd"),
    _ArgField("model", "--model", "model"),
    _ArgField("system_prompt", "--system-prompt", "systemPrompt"),
    _ArgField("system_prompt_file", "--system-prompt-file", "systemPromptFile"),
    _ArgField("image_urls", "--image-urls", "imageUrls", kind="json_list"),
    _ArgField("with_deploy_hook", "--with-deploy-hook", "withDeployHook", kind="flag"),
    _ArgField("sandbox_id", "--sandbox-id", "sandboxId"),
    _ArgField("project_id", "--project-id", "projectId"),
)


def parse_tokens(tokens: Sequence[str]) -> dict[str, Any]:
    """Split ``--key=value`` tokens into raw values keyed by field name.

    Values keep everything after the first ``=``. Unknown tokens are ignored.
    """
    raw: dict[str, Any] = {}
    for token in tokens:
        for field in _FIELDS:
            if field.kind == "flag" and token == field.flag:
                raw[field.name] = True
                break
            prefix = f"{field.flag}="
            if token.startswith(prefix) and field.name not in raw:
                value = token[len(prefix):]
                raw[field.name] = (
                    value.lower() in ("1", "true", "yes") if field.kind == "flag" else value
                )
                break
    return raw


def parse_args(tokens: Sequence[str], default_cwd: str = DEFAULT_CWD) -> ExecutionSpec:
    return resolve(parse_tokens(tokens), default_cwd=default_cwd)


def spec_from_request(
    body: Mapping[str, Any], default_cwd: str = DEFAULT_CWD
) -> ExecutionSpec:
    raw = {field.name: body[field.key] for field in _FIELDS if body.get(field.key) is not None}
    return resolve(raw, default_cwd=default_cwd)


def resolve(raw: Mapping[str, Any], default_cwd: str = DEFAULT_CWD) -> ExecutionSpec:
    for field in _FIELDS:
        value = raw.get(field.name)
        if field.required and (value is None or value == ""):
            raise ValidationError(f"{field.flag} argument is required", field=field.name)
        if value is None or field.kind != "str":
            continue
        if not isinstance(value, str):
            raise ValidationError(f"{field.flag} must be a string", field=field.name)

    with_hook = raw.get("with_deploy_hook", False)
    if not isinstance(with_hook, bool):
        raise ValidationError("--with-deploy-hook must be a boolean", field="with_deploy_hook")

    return ExecutionSpec(
        prompt=raw["prompt"],
        cwd=raw.get("cwd") or default_cwd,
        system_prompt=_resolve_system_prompt(
            raw.get("system_prompt"), raw.get("system_prompt_file")
        ),
        model=raw.get("model") or None,
        image_urls=tuple(_parse_image_urls(raw.get("image_urls"))),
        with_deploy_hook=with_hook,
    )


def _resolve_system_prompt(inline: str | None, file_path: str | None) -> str | None:
    if file_path:
        if inline:
            logger.info("Both system prompt sources given; using %s", file_path)
        path = Path(file_path)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.error("System prompt file not found: %s", file_path)
            return None
        except OSError as exc:
            logger.error("Failed to read system prompt file %s: %s", file_path, exc)
            return None
        logger.info("Loaded system prompt from %s (%d chars)", file_path, len(content))
        return content
    if inline:
        logger.info("Using inline system prompt (%d chars)", len(inline))
        return inline
    return None


def _parse_image_urls(raw: Any) -> list[str]:
    if raw is None or raw == "":
        return []
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Failed to parse image URLs, continuing without images: %s", exc)
            return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        logger.warning("Image URLs must be a JSON array of strings; ignoring %r", raw)
        return []
    logger.info("Parsed %d image URLs", len(value))
    return value
