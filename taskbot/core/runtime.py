"""Runtime — wires the store, job engine, workers and event bus together."""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from taskbot.agent.context import ContextBuilder
from taskbot.agent.tools.context import ToolContext
from taskbot.core.activity import ActivityRecorder
from taskbot.core.background.email_worker import EmailWorker
from taskbot.core.background.project_worker import ProjectWorker
from taskbot.core.background.runstate import TaskRunStateCoordinator
from taskbot.core.background.task_worker import TaskWorker
from taskbot.core.config.schema import Config
from taskbot.core.cron.actions import ActionHandlers
from taskbot.core.cron.dispatcher import JobDispatcher
from taskbot.core.cron.jobs import JobStore
from taskbot.core.cron.scheduler import JobScheduler
from taskbot.core.events import (
    EMAIL_PROCESS,
    JOB_EXECUTE,
    PROJECT_WORK,
    TASK_PROCESS,
    EventBus,
)
from taskbot.core.mail import ResendMailer
from taskbot.core.providers.litellm import Embedder, make_embedder, setup_provider
from taskbot.memory.store import MemoryStore


class Runtime:
    """Process-wide collaborators, built once at startup.

    Parameters
    ----------
    config : Config
        Application config.
    db : MemoryStore, optional
        Store to use. Defaults to ``config.db_path``.
    embedder : Embedder, optional
        Embedding callable. None disables semantic search.
    mailer : ResendMailer, optional
        Outbound mail client. None disables email tools.
    http_transport : httpx.AsyncBaseTransport, optional
        Transport for webhook calls (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: Config,
        db: MemoryStore | None = None,
        embedder: Embedder | None = None,
        mailer: ResendMailer | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.db = db or MemoryStore(str(config.db_path))
        self.embedder = embedder
        self.mailer = mailer
        self.http_transport = http_transport

        self.jobs = JobStore(self.db, config)
        self.runstate = TaskRunStateCoordinator(self.db, config)
        self.recorder = ActivityRecorder(self.db, config)
        self.context = ContextBuilder(config, self.db)
        self.bus = EventBus()

        self.actions = ActionHandlers(self)
        self.dispatcher = JobDispatcher(self)
        self.task_worker = TaskWorker(self)
        self.project_worker = ProjectWorker(self)
        self.email_worker = EmailWorker(self)
        self.scheduler = JobScheduler(self)

        self.bus.on(JOB_EXECUTE, self.dispatcher.handle_event)
        self.bus.on(TASK_PROCESS, self.task_worker.handle_event)
        self.bus.on(PROJECT_WORK, self.project_worker.handle_event)
        self.bus.on(EMAIL_PROCESS, self.email_worker.handle_event)

    @classmethod
    def from_config(cls, config: Config) -> Runtime:
        """Build with real providers: LiteLLM keys, embedder and mailer from config."""
        setup_provider(config)
        mailer = ResendMailer(config.mail) if config.mail_enabled else None
        runtime = cls(config, embedder=make_embedder(config), mailer=mailer)
        logger.info(
            f"Runtime ready — model: {config.assistant.model}, "
            f"embeddings: {'on' if runtime.embedder else 'off'}, "
            f"mail: {'on' if mailer else 'off'}"
        )
        return runtime

    def tool_context(self, agent_id: str, **kwargs: Any) -> ToolContext:
        """ToolContext for ``agent_id`` with every collaborator this runtime has."""
        agent = self.db.get_agent(agent_id) or {}
        return ToolContext(
            agent_id=agent_id,
            db=self.db,
            config=self.config,
            user_id=agent.get("user_id"),
            timezone=agent.get("timezone"),
            jobs=self.jobs,
            embedder=self.embedder,
            mailer=self.mailer,
            runstate=self.runstate,
            **kwargs,
        )

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self, scheduler: bool = True) -> None:
        await self.recorder.start()
        if scheduler:
            self.scheduler.start()

    async def stop(self) -> None:
        self.scheduler.stop()
        await self.bus.shutdown()
        await self.recorder.stop()
        logger.info("Runtime stopped")
