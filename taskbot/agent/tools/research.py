"""Research tool — web-grounded answers through a search-capable model."""

from __future__ import annotations

from langchain_core.tools import tool

from taskbot.agent.tools.context import ToolContext, failure
from taskbot.core.providers import litellm as llm_provider

_RESEARCH_PROMPT = (
    "You are a research assistant. Answer with current, factual information "
    "and cite your sources inline. Be concise."
)


def make_research_tools(ctx: ToolContext) -> list:
    """Research tool. Empty list when no research model is configured."""
    cfg = ctx.config.research
    if not cfg.model:
        return []

    @tool
    async def research(query: str) -> dict:
        """Research a topic on the web and return a sourced summary. Use for
        current events, facts you are unsure of, or background on a person or company."""
        reply = await llm_provider.achat(
            messages=[
                {"role": "system", "content": _RESEARCH_PROMPT},
                {"role": "user", "content": query},
            ],
            model=cfg.model,
            temperature=cfg.temperature,
            api_base=ctx.config.get_api_base(cfg.model),
        )
        answer = reply.content if isinstance(reply.content, str) else str(reply.content)
        if not answer or answer.startswith("Error calling LLM"):
            return failure(answer or "Research returned no answer")
        return {"success": True, "query": query, "answer": answer}

    return [research]
