"""Model backend contract and the OpenAI-compatible implementation."""

from motor_cortex.llm.openai_backend import OpenAIChatBackend, build_backend
from motor_cortex.llm.protocol import (
    CompletionRequest,
    CompletionResponse,
    ModelBackend,
    ModelBackendError,
    ModelConfig,
    ProviderConfig,
    ToolCall,
)

__all__ = [
    "CompletionRequest",
    "CompletionResponse",
    "ModelBackend",
    "ModelBackendError",
    "ModelConfig",
    "OpenAIChatBackend",
    "ProviderConfig",
    "ToolCall",
    "build_backend",
]
