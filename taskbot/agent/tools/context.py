"""ToolContext — explicit dependencies handed to every tool factory."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from taskbot.core.config.schema import Config
from taskbot.memory.store import MemoryStore

if TYPE_CHECKING:
    from taskbot.core.background.runstate import TaskRunStateCoordinator
    from taskbot.core.cron.jobs import JobStore
    from taskbot.core.mail import ResendMailer
    from taskbot.core.providers.litellm import Embedder


@dataclass
class ToolContext:
    """Everything a tool may touch. Tools never read module globals.

    Optional collaborators gate tool groups: ``jobs`` → scheduling,
    ``mailer`` → email, ``runstate`` + ``task_id`` → run tools,
    ``email_id`` → email linking.
    """

    agent_id: str
    db: MemoryStore
    config: Config = field(default_factory=Config)
    user_id: str | None = None
    conversation_id: str | None = None
    timezone: str | None = None
    jobs: JobStore | None = None
    embedder: Embedder | None = None
    mailer: ResendMailer | None = None
    runstate: TaskRunStateCoordinator | None = None
    task_id: str | None = None
    project_id: str | None = None
    email_id: str | None = None

    @property
    def tz(self) -> str:
        return self.timezone or self.config.background.default_timezone

    async def embed(self, title: str, description: str | None = None) -> list[float] | None:
        """Embedding for a title/description pair; None without an embedder."""
        if self.embedder is None:
            return None
        text = f"{title}\n\n{description}" if description else title
        return await self.embedder(text)

    def resolve_assignee(self, assignee_type: str | None) -> str | None:
        if assignee_type == "agent":
            return self.agent_id
        if assignee_type == "user":
            return self.user_id
        return None


def failure(error: str, **extra: Any) -> dict[str, Any]:
    return {"success": False, "error": error, **extra}


def truncate(text: str | None, limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."
