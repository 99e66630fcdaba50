"""LiteLLM client wrapper."""

from __future__ import annotations

import importlib
import importlib.util
from pathlib import Path
from typing import Any

import yaml

from capsule.errors import ConfigurationError, TransientNetworkError

_TRANSIENT_ERRORS = (
    "APIConnectionError",
    "Timeout",
    "RateLimitError",
    "ServiceUnavailableError",
    "InternalServerError",
)
_CONFIGURATION_ERRORS = ("AuthenticationError", "NotFoundError", "PermissionDeniedError")


class LiteLLMClient:
    def __init__(
        self,
        config_path: str = "config/models.yaml",
        default_model: str | None = None,
    ) -> None:
        self._config_path = Path(config_path)
        self._default_model = default_model
        self._profiles = self._load_profiles()

    def _load_profiles(self) -> dict[str, dict[str, Any]]:
        if not self._config_path.exists():
            return {}
        with self._config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        profiles = data.get("profiles", {})
        if not isinstance(profiles, dict):
            return {}
        if not self._default_model and isinstance(data.get("default"), str):
            self._default_model = data["default"]
        return profiles

    def get_profile(self, name: str) -> dict[str, Any]:
        profile = self._profiles.get(name)
        if not profile:
            raise KeyError(f"Unknown model profile: {name}")
        return profile

    def resolve(self, model: str | None) -> dict[str, Any]:
        """Completion parameters for a profile name or a raw LiteLLM model id."""
        name = model or self._default_model
        if not name:
            raise ConfigurationError(
                "No model configured (pass --model or set CAPSULE_DEFAULT_MODEL)."
            )
        if name in self._profiles:
            profile = self.get_profile(name)
            if "litellm_model" not in profile:
                raise ConfigurationError(f"Model profile {name} has no litellm_model")
            return {
                "model": profile["litellm_model"],
                "temperature": profile.get("temperature", 0.2),
                "max_tokens": profile.get("max_output_tokens", 4096),
            }
        return {"model": name, "temperature": 0.2, "max_tokens": 4096}

    async def acompletion(
        self,
        params: dict[str, Any],
        messages: list[dict[str, Any]],
        **overrides: Any,
    ) -> Any:
        litellm = self._litellm()
        request: dict[str, Any] = dict(params)
        request["messages"] = messages
        request.update(overrides)
        try:
            return await litellm.acompletion(**request)
        except Exception as exc:
            kind = type(exc).__name__
            if kind in _CONFIGURATION_ERRORS:
                raise ConfigurationError(f"{kind}: {exc}") from exc
            if kind in _TRANSIENT_ERRORS:
                raise TransientNetworkError(f"{kind}: {exc}") from exc
            raise

    @staticmethod
    def _litellm() -> Any:
        if importlib.util.find_spec("litellm") is None:
            raise ConfigurationError("litellm must be installed to request completions.")
        return importlib.import_module("litellm")
