"""LLM provider abstraction module."""

from diarymind.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from diarymind.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "ToolCallRequest", "LiteLLMProvider"]
