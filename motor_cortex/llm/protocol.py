"""Model backend contract and configuration dataclasses.

The loop only sees CompletionRequest/CompletionResponse; vendor wire formats
stay inside the backend implementations.
"""

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable


class ModelBackendError(Exception):
    """A completion request failed (transport, provider or decoding error)."""


@dataclass
class ToolCall:
    id: str
    name: str
    # Raw JSON text as produced by the model; parsed by the loop.
    arguments: str = "{}"

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class CompletionRequest:
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] | None = None
    tool_choice: Literal["auto", "none", "required"] = "auto"
    max_tokens: int = 4096
    role: str = "motor"


@dataclass
class CompletionResponse:
    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    model: str = ""


@runtime_checkable
class ModelBackend(Protocol):
    """Opaque completion service used by the attempt loop."""

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Return one completion. Raises ModelBackendError (or any exception) on failure."""
        ...


@dataclass
class ModelConfig:
    """Per-agent model configuration (from config/settings.yaml)."""

    provider: str
    model: str
    temperature: float = 0.2
    max_tokens: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderConfig:
    """Provider configuration from config/settings.yaml."""

    id: str
    type: str  # openai_compatible
    base_url: str | None = None
    api_key_secret: str | None = None
    api_key_literal: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 60.0
