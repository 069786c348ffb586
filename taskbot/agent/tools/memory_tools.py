"""Memory tools — semantic search, saved memories, recent conversations."""

from __future__ import annotations

from datetime import timedelta
from typing import Literal

from langchain_core.tools import tool

from taskbot.agent.tools.context import ToolContext, failure, truncate
from taskbot.core.timeutil import parse_iso, to_iso, utc_now

MemoryCategory = Literal[
    "work_preferences",
    "personal_background",
    "communication_style",
    "technical_preferences",
    "general",
]


def make_memory_tools(ctx: ToolContext) -> list:
    """Create memory tools closed over the tool context."""
    db = ctx.db

    @tool
    async def search_memory(query: str, limit: int = 10) -> dict:
        """Search memory for relevant information from past projects, tasks and
        saved memories. Use this when the user refers to something discussed before."""
        embedding = await ctx.embed(query)
        if embedding is None:
            return failure("Semantic search is unavailable", results=[])
        rows = db.search_embeddings(embedding, ctx.agent_id, match_count=limit, match_threshold=0.5)
        if not rows:
            return {"success": True, "message": "No relevant memories found.", "results": [], "query": query}
        results = [
            {
                "type": r["source_type"],
                "id": r["source_id"],
                "title": r["title"],
                "content": truncate(r["content"], 300),
                "relevance": f"{round(r['similarity'] * 100)}%",
                "date": parse_iso(r["created_at"]).date().isoformat(),
            }
            for r in rows
        ]
        return {"success": True, "query": query, "result_count": len(results), "results": results}

    @tool
    async def save_to_memory(
        title: str,
        content: str,
        always_include: bool = False,
        category: MemoryCategory = "general",
    ) -> dict:
        """Save important information for future reference. Set always_include=true
        for critical facts that should appear in every conversation."""
        embedding = await ctx.embed(title, content)
        memory = db.add_memory(
            ctx.agent_id, title, content, category=category,
            always_include=always_include, embedding=embedding,
        )
        note = " This will always be included in your context." if always_include else ""
        return {"success": True, "id": memory["id"], "message": f'Saved "{title}" to memory.{note}'}

    @tool
    def get_recent_conversations(
        days_back: int = 7,
        limit: int = 5,
        include_messages: bool = True,
        messages_per_conversation: int = 10,
    ) -> dict:
        """Get recent conversations and, optionally, their messages. Use this to
        recall or summarize what was discussed recently."""
        since = to_iso(utc_now() - timedelta(days=days_back))
        conversations = db.list_conversations(ctx.agent_id, since=since, limit=limit)
        out = []
        for conv in conversations:
            item = {
                "id": conv["id"],
                "title": conv["title"],
                "channel": conv["channel_type"],
                "updated_at": conv["updated_at"],
            }
            if include_messages:
                messages = db.get_messages(conv["id"])[-messages_per_conversation:]
                item["messages"] = [
                    {"role": m["role"], "content": truncate(m["content"], 500)} for m in messages
                ]
            out.append(item)
        return {"success": True, "conversations": out, "count": len(out)}

    return [search_memory, save_to_memory, get_recent_conversations]
