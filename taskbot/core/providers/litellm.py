"""LiteLLM provider — chat returns LangChain AIMessage, embeddings return floats."""

from __future__ import annotations

import json
import os
from typing import Any, Awaitable, Callable

import litellm
from langchain_core.messages import AIMessage
from loguru import logger

from taskbot.core.config.schema import Config

# Suppress litellm noise
litellm.suppress_debug_info = True

Embedder = Callable[[str], Awaitable["list[float] | None"]]

_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "groq": "GROQ_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "perplexity": "PERPLEXITYAI_API_KEY",
}


def setup_provider(config: Config) -> None:
    """Export configured provider keys for LiteLLM. Call once at startup."""
    for name, env_name in _KEY_ENV.items():
        provider = getattr(config.providers, name)
        if provider.api_key:
            os.environ.setdefault(env_name, provider.api_key)


async def achat(
    messages: list[dict[str, Any]],
    model: str,
    tools: list[dict[str, Any]] | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    api_base: str | None = None,
) -> AIMessage:
    """Call LiteLLM and return a LangChain AIMessage.

    Provider errors come back as an AIMessage with the error text and no
    tool calls, which ends an agent run gracefully.
    """
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if tools:
        kwargs["tools"] = tools
        kwargs["tool_choice"] = "auto"
    if api_base:
        kwargs["api_base"] = api_base

    try:
        response = await litellm.acompletion(**kwargs)
        return _to_ai_message(response)
    except Exception as e:
        logger.error(f"LLM error ({model}): {e}")
        return AIMessage(content=f"Error calling LLM: {e}")


async def aembed(text: str, model: str) -> list[float] | None:
    """Embed ``text``. Returns None when the provider fails."""
    if not text.strip():
        return None
    try:
        response = await litellm.aembedding(model=model, input=[text])
    except Exception as e:
        logger.warning(f"Embedding failed ({model}): {e}")
        return None
    item = response.data[0]
    vector = item["embedding"] if isinstance(item, dict) else item.embedding
    return [float(v) for v in vector]


def make_embedder(config: Config) -> Embedder | None:
    """Embedding callable bound to the configured model, or None if disabled."""
    if not config.embedding.enabled:
        return None
    model = config.embedding.model

    async def embed(text: str) -> list[float] | None:
        return await aembed(text, model)

    return embed


def _to_ai_message(response: Any) -> AIMessage:
    """Convert litellm response → LangChain AIMessage."""
    choice = response.choices[0]
    msg = choice.message

    tool_calls = []
    for tc in getattr(msg, "tool_calls", None) or []:
        args = tc.function.arguments
        if isinstance(args, str):
            try:
                args = json.loads(args) if args else {}
            except json.JSONDecodeError:
                args = {"raw": args}
        tool_calls.append({"id": tc.id, "name": tc.function.name, "args": args})

    usage = getattr(response, "usage", None)
    return AIMessage(
        content=msg.content or "",
        tool_calls=tool_calls,
        response_metadata={
            "finish_reason": choice.finish_reason or "stop",
            "usage": {
                "prompt_tokens": getattr(usage, "prompt_tokens", 0),
                "completion_tokens": getattr(usage, "completion_tokens", 0),
                "total_tokens": getattr(usage, "total_tokens", 0),
            },
        },
    )
