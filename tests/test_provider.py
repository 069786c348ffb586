"""Tests for the LiteLLM provider adapter."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from taskbot.core.providers import litellm as provider


def _response(content="hello", tool_calls=None):
    msg = SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = SimpleNamespace(finish_reason="stop", message=msg)
    usage = SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15)
    return SimpleNamespace(choices=[choice], usage=usage)


def _tool_call(name, arguments, call_id="call_1"):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


# ── setup_provider ────────────────────────────────────────


def test_setup_provider_exports_keys(cfg, monkeypatch):
    monkeypatch.setattr(provider.os, "environ", {})
    cfg.providers.openai.api_key = "sk-openai"
    provider.setup_provider(cfg)
    assert provider.os.environ["OPENAI_API_KEY"] == "sk-openai"
    assert "GROQ_API_KEY" not in provider.os.environ


def test_setup_provider_keeps_existing_env(cfg, monkeypatch):
    monkeypatch.setattr(provider.os, "environ", {"OPENAI_API_KEY": "from-env"})
    cfg.providers.openai.api_key = "from-config"
    provider.setup_provider(cfg)
    assert provider.os.environ["OPENAI_API_KEY"] == "from-env"


# ── _to_ai_message ────────────────────────────────────────


def test_to_ai_message_text():
    msg = provider._to_ai_message(_response("hi there"))
    assert msg.content == "hi there"
    assert msg.tool_calls == []
    assert msg.response_metadata["usage"]["total_tokens"] == 15


def test_to_ai_message_tool_calls():
    msg = provider._to_ai_message(
        _response("", [_tool_call("create_task", '{"title": "Buy milk"}')])
    )
    assert msg.tool_calls[0]["name"] == "create_task"
    assert msg.tool_calls[0]["args"] == {"title": "Buy milk"}
    assert msg.tool_calls[0]["id"] == "call_1"


def test_to_ai_message_bad_arguments():
    msg = provider._to_ai_message(_response("", [_tool_call("x", "{not json")]))
    assert msg.tool_calls[0]["args"] == {"raw": "{not json"}


# ── achat / aembed ────────────────────────────────────────


@pytest.mark.asyncio
async def test_achat_passes_tools():
    with patch("litellm.acompletion", new_callable=AsyncMock, return_value=_response()) as call:
        await provider.achat([{"role": "user", "content": "hi"}], "openai/gpt-4o", tools=[{"type": "function"}])
    kwargs = call.call_args.kwargs
    assert kwargs["tool_choice"] == "auto"
    assert "api_base" not in kwargs


@pytest.mark.asyncio
async def test_achat_error_becomes_message():
    with patch("litellm.acompletion", new_callable=AsyncMock, side_effect=RuntimeError("rate limited")):
        msg = await provider.achat([{"role": "user", "content": "hi"}], "openai/gpt-4o")
    assert msg.content == "Error calling LLM: rate limited"
    assert msg.tool_calls == []


@pytest.mark.asyncio
async def test_aembed_failure_returns_none():
    with patch("litellm.aembedding", new_callable=AsyncMock, side_effect=RuntimeError("down")):
        assert await provider.aembed("hello", "text-embedding-3-small") is None


@pytest.mark.asyncio
async def test_aembed_blank_text():
    assert await provider.aembed("   ", "text-embedding-3-small") is None


def test_embedder_disabled(cfg):
    assert provider.make_embedder(cfg) is None
