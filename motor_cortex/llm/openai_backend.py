"""Chat Completions backend for OpenAI and OpenAI-compatible providers (OpenRouter, LM Studio, ...)."""

import logging
from typing import Any, Callable

from openai import AsyncOpenAI, OpenAIError

from motor_cortex.llm.protocol import (
    CompletionRequest,
    CompletionResponse,
    ModelBackendError,
    ModelConfig,
    ProviderConfig,
    ToolCall,
)

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDER_TYPES = ("openai_compatible",)


class OpenAIChatBackend:
    """ModelBackend over AsyncOpenAI.chat.completions."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        temperature: float = 0.2,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._extra = dict(extra or {})

    @property
    def model(self) -> str:
        return self._model

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": request.messages,
            "max_tokens": request.max_tokens,
            "temperature": self._temperature,
            **self._extra,
        }
        if request.tools:
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = request.tool_choice
            kwargs["parallel_tool_calls"] = False
        try:
            resp = await self._client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            raise ModelBackendError(f"{type(e).__name__}: {e}") from e
        if not resp.choices:
            raise ModelBackendError("Provider returned no choices")

        choice = resp.choices[0]
        message = choice.message
        tool_calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}")
            for tc in (message.tool_calls or [])
            if getattr(tc, "function", None) is not None
        ]
        return CompletionResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason,
            model=resp.model or self._model,
        )


def _dict_to_provider_config(provider_id: str, data: dict[str, Any]) -> ProviderConfig:
    return ProviderConfig(
        id=provider_id,
        type=str(data.get("type", "openai_compatible")),
        base_url=data.get("base_url"),
        api_key_secret=data.get("api_key_secret"),
        api_key_literal=data.get("api_key_literal"),
        default_headers=dict(data.get("default_headers") or {}),
        timeout=float(data.get("timeout", 60.0)),
    )


def _dict_to_model_config(data: dict[str, Any]) -> ModelConfig:
    return ModelConfig(
        provider=str(data.get("provider", "")),
        model=str(data.get("model", "")),
        temperature=float(data.get("temperature", 0.2)),
        max_tokens=data.get("max_tokens"),
        extra=dict(data.get("extra") or {}),
    )


def _resolve_key(cfg: ProviderConfig, secrets_getter: Callable[[str], str | None]) -> str | None:
    if cfg.api_key_literal:
        return cfg.api_key_literal
    if cfg.api_key_secret:
        return secrets_getter(cfg.api_key_secret)
    return None


def build_backend(
    settings: dict[str, Any],
    secrets_getter: Callable[[str], str | None],
    agent_id: str = "motor",
) -> OpenAIChatBackend:
    """Build the backend for agent_id from the agents/providers sections of settings."""
    agents = settings.get("agents") or {}
    agent_data = agents.get(agent_id) or agents.get("default")
    if not isinstance(agent_data, dict) or not agent_data.get("provider"):
        raise KeyError(
            f"No model config for agent_id={agent_id!r} and no 'default' in config/settings.yaml"
        )
    agent_cfg = _dict_to_model_config(agent_data)
    provider_data = (settings.get("providers") or {}).get(agent_cfg.provider)
    if not isinstance(provider_data, dict):
        raise KeyError(f"Unknown provider {agent_cfg.provider!r} for agent_id={agent_id!r}")
    provider_cfg = _dict_to_provider_config(agent_cfg.provider, provider_data)
    if provider_cfg.type not in SUPPORTED_PROVIDER_TYPES:
        raise KeyError(
            f"Unknown provider type {provider_cfg.type!r} for provider id {provider_cfg.id!r}"
        )

    api_key = _resolve_key(provider_cfg, secrets_getter)
    if not api_key and not provider_cfg.base_url:
        logger.warning(
            "openai_backend: no API key for provider %s (secret %s)",
            provider_cfg.id,
            provider_cfg.api_key_secret,
        )
    client = AsyncOpenAI(
        base_url=provider_cfg.base_url,
        api_key=api_key or "not-required",
        default_headers=provider_cfg.default_headers or None,
        timeout=provider_cfg.timeout,
    )
    return OpenAIChatBackend(
        client, agent_cfg.model, temperature=agent_cfg.temperature, extra=agent_cfg.extra
    )
