"""LLM providers module."""

from chatrelay.providers.base import LLMProvider, LLMResponse
from chatrelay.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider"]
