"""LLM client integrations."""

from capsule.providers.llm.litellm_client import LiteLLMClient

__all__ = ["LiteLLMClient"]
