"""ContextBuilder — assembles system prompts and task-run prompts from SQLite."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

from taskbot.core.config.schema import Config
from taskbot.core.providers.litellm import Embedder
from taskbot.memory.store import MemoryStore

_CHANNEL_GUIDANCE = {
    "app": "You are chatting with the user in the app.",
    "job": (
        "You are running a scheduled job. The user is not watching; do the work, "
        "then reply with a short summary of what you did."
    ),
    "task": (
        "You are working on a task in the background. Log progress as you go and "
        "finish by calling mark_task_complete or request_human_input."
    ),
    "project": "You are working through a project's open tasks one at a time.",
    "email": (
        "You are processing an email that arrived in your inbox. Decide whether it "
        "relates to existing work, act on it, and reply only when a reply is useful."
    ),
}


class ContextBuilder:
    """
    Builds a layered system prompt for one agent.

    Layers:
      1. Identity (config system_prompt > persona config) + agent instructions
      2. Runtime info (user, local time in the agent's timezone)
      3. Channel guidance (app, job, task, project, email)
      4. Always-included memories
    """

    def __init__(self, config: Config, db: MemoryStore):
        self.config = config
        self.db = db

    def build(self, agent_id: str, channel: str = "app") -> str:
        """Build the full system prompt.

        Parameters
        ----------
        agent_id : str
            Agent whose identity, timezone and memories are used.
        channel : str
            Trigger channel; selects the guidance layer.
        """
        agent = self.db.get_agent(agent_id) or {}
        parts: list[str] = []

        # 1. Identity
        identity = self._get_identity()
        if agent.get("instructions"):
            identity += f"\n\n## Instructions from your user\n\n{agent['instructions']}"
        parts.append(identity)

        # 2. Runtime
        tz_name = agent.get("timezone") or self.config.background.default_timezone
        parts.append(
            "# Runtime\n\n"
            f"- User: {agent.get('user_name') or agent.get('user_id') or 'unknown'}\n"
            f"- User email: {agent.get('user_email') or 'unknown'}\n"
            f"- Timezone: {tz_name}\n"
            f"- Current time: {self._local_now(tz_name)}\n"
            "- Interpret dates and times the user mentions in this timezone."
        )

        # 3. Channel
        guidance = _CHANNEL_GUIDANCE.get(channel)
        if guidance:
            parts.append(f"# Context\n\n{guidance}")

        # 4. Memories
        memories = self.db.list_memories(agent_id, always_include=True)
        if memories:
            lines = [f"## {m['title']}\n{m['content']}" for m in memories]
            parts.append("# Memory\n\n" + "\n\n".join(lines))

        return "\n\n---\n\n".join(parts)

    # ── Identity resolution ───────────────────────────────────

    def _get_identity(self) -> str:
        if self.config.assistant.system_prompt:
            return self._apply_persona_suffix(self.config.assistant.system_prompt)
        return self._build_persona_prompt()

    def _build_persona_prompt(self) -> str:
        persona = self.config.assistant.persona
        name = persona.name or self.config.assistant.name
        parts = [
            f"You are {name}, an AI assistant that manages tasks, projects, "
            "email and schedules on behalf of your user."
        ]
        if persona.tone:
            parts.append(f"Tone: {persona.tone}.")
        if persona.language:
            parts.append(f"Always respond in: {persona.language}.")
        if persona.constraints:
            parts.append("Constraints:")
            for c in persona.constraints:
                parts.append(f"- {c}")
        return "\n".join(parts)

    def _apply_persona_suffix(self, base: str) -> str:
        persona = self.config.assistant.persona
        if not persona.constraints:
            return base
        suffix = "\n\n## Additional Constraints\n\n" + "\n".join(
            f"- {c}" for c in persona.constraints
        )
        return base + suffix

    @staticmethod
    def _local_now(tz_name: str) -> str:
        try:
            zone = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown agent timezone {tz_name!r}, using UTC")
            zone = timezone.utc
        return datetime.now(zone).strftime("%A, %Y-%m-%d %H:%M %Z")


# ════════════════════════════════════════════════════════════
# TASK RUN CONTEXT
# ════════════════════════════════════════════════════════════


async def gather_task_context(
    db: MemoryStore,
    task: dict[str, Any],
    embedder: Embedder | None = None,
    threshold: float = 0.65,
    comment_limit: int = 10,
    match_count: int = 5,
) -> dict[str, Any]:
    """Collect what an agent needs to work a task: project, recent comments, related items.

    Related items come from semantic search over the task's title and
    description and never include the task itself.
    """
    project = db.get_project(task["project_id"]) if task.get("project_id") else None
    comments = list(reversed(db.list_comments(task_id=task["id"], limit=comment_limit)))

    related: list[dict[str, Any]] = []
    if embedder is not None:
        text = task["title"]
        if task.get("description"):
            text += f"\n\n{task['description']}"
        embedding = await embedder(text)
        if embedding:
            matches = db.search_embeddings(
                embedding, task["agent_id"], match_count=match_count + 1, match_threshold=threshold
            )
            related = [m for m in matches if m["source_id"] != task["id"]][:match_count]

    return {"task": task, "project": project, "comments": comments, "related": related}


def build_task_prompt(context: dict[str, Any]) -> str:
    """Render the user-turn prompt for a background task run."""
    task = context["task"]
    sections = [
        "## YOUR CURRENT TASK\n\n"
        f"**Title:** {task['title']}\n"
        f"**Description:** {task.get('description') or 'No description'}\n"
        f"**Priority:** {task.get('priority') or 'medium'}\n"
        f"**Status:** {task['status']}\n"
        f"**Due:** {task.get('due_date') or 'No due date'}"
    ]

    project = context.get("project")
    if project:
        sections.append(
            "## PROJECT CONTEXT\n\n"
            f"**Project:** {project['title']}\n"
            f"{project.get('description') or ''}".rstrip()
        )

    comments = context.get("comments") or []
    if comments:
        lines = [
            f"- [{c['author_type']}/{c['comment_type']}] {c['content']}" for c in comments
        ]
        sections.append("## PREVIOUS PROGRESS\n\n" + "\n".join(lines))

    related = context.get("related") or []
    if related:
        lines = [
            f"- [{r['source_type']}] {r['title']}: {(r['content'] or '')[:200]}" for r in related
        ]
        sections.append("## RELATED CONTEXT\n\n" + "\n".join(lines))

    sections.append(
        "## INSTRUCTIONS\n\n"
        "1. Review the task and any previous progress.\n"
        "2. Do the work with the tools you have; log progress with log_progress.\n"
        "3. If you are blocked on the user, call request_human_input with a clear question.\n"
        "4. If you are waiting on something external, call schedule_follow_up.\n"
        "5. When the task is done, call mark_task_complete with a summary of the result."
    )
    return "\n\n".join(sections)
