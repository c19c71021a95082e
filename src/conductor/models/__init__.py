"""Convenience exports for Sprint Conductor LLM client implementations."""

from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMCompletion,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
    LLMUsage,
)
from .offline import OfflineLLMClient
from .responses import ResponsesClient
from .router import ModelPricing, ModelRoute, ModelRouter, TaskType

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMCompletion",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "LLMUsage",
    "ModelPricing",
    "ModelRoute",
    "ModelRouter",
    "OfflineLLMClient",
    "ResponsesClient",
    "TaskType",
]
