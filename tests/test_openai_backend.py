"""Tests for the OpenAI-compatible backend and provider routing."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from motor_cortex.llm import CompletionRequest, ModelBackendError, OpenAIChatBackend, build_backend


def _completion(content=None, tool_calls=None, finish_reason="stop", model="gpt-test"):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)], model=model
    )


def _client(result=None, error=None) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=result, side_effect=error)
    return client


@pytest.mark.asyncio
async def test_complete_maps_tool_calls() -> None:
    tool_call = SimpleNamespace(
        id="call_1", function=SimpleNamespace(name="read", arguments='{"path": "a.txt"}')
    )
    client = _client(_completion(tool_calls=[tool_call], finish_reason="tool_calls"))
    backend = OpenAIChatBackend(client, "gpt-test", temperature=0.1)
    tools = [{"type": "function", "function": {"name": "read", "parameters": {}}}]

    response = await backend.complete(
        CompletionRequest(messages=[{"role": "user", "content": "hi"}], tools=tools, max_tokens=100)
    )

    assert response.finish_reason == "tool_calls"
    assert response.tool_calls[0].name == "read"
    assert response.tool_calls[0].arguments == '{"path": "a.txt"}'
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-test"
    assert kwargs["tools"] == tools
    assert kwargs["tool_choice"] == "auto"
    assert kwargs["parallel_tool_calls"] is False
    assert kwargs["max_tokens"] == 100


@pytest.mark.asyncio
async def test_complete_without_tools_omits_tool_params() -> None:
    client = _client(_completion(content="done"))
    backend = OpenAIChatBackend(client, "gpt-test")
    response = await backend.complete(CompletionRequest(messages=[]))
    assert response.content == "done"
    assert response.tool_calls == []
    assert "tools" not in client.chat.completions.create.call_args.kwargs


@pytest.mark.asyncio
async def test_provider_error_wrapped() -> None:
    request = httpx.Request("POST", "https://api.example.net/v1/chat/completions")
    client = _client(error=openai.APIConnectionError(request=request))
    backend = OpenAIChatBackend(client, "gpt-test")
    with pytest.raises(ModelBackendError, match="APIConnectionError"):
        await backend.complete(CompletionRequest(messages=[]))


@pytest.mark.asyncio
async def test_empty_choices_is_error() -> None:
    client = _client(SimpleNamespace(choices=[], model="x"))
    with pytest.raises(ModelBackendError):
        await OpenAIChatBackend(client, "gpt-test").complete(CompletionRequest(messages=[]))


class TestBuildBackend:
    def _settings(self, **provider) -> dict:
        return {
            "agents": {"motor": {"provider": "local", "model": "qwen", "temperature": 0.5}},
            "providers": {"local": {"type": "openai_compatible", **provider}},
        }

    def test_api_key_from_secret_getter(self) -> None:
        seen: list[str] = []

        def getter(name: str) -> str | None:
            seen.append(name)
            return "sk-test"

        backend = build_backend(self._settings(api_key_secret="LOCAL_KEY"), getter)
        assert backend.model == "qwen"
        assert seen == ["LOCAL_KEY"]

    def test_literal_key_and_base_url(self) -> None:
        backend = build_backend(
            self._settings(base_url="http://127.0.0.1:1234/v1", api_key_literal="lm"), lambda n: None
        )
        assert backend.model == "qwen"

    def test_default_agent_fallback(self) -> None:
        settings = self._settings(api_key_literal="x")
        settings["agents"] = {"default": settings["agents"]["motor"]}
        assert build_backend(settings, lambda n: None).model == "qwen"

    def test_unknown_provider(self) -> None:
        settings = self._settings()
        settings["agents"]["motor"]["provider"] = "missing"
        with pytest.raises(KeyError):
            build_backend(settings, lambda n: None)

    def test_unsupported_provider_type(self) -> None:
        with pytest.raises(KeyError):
            build_backend(self._settings(type="anthropic"), lambda n: None)
