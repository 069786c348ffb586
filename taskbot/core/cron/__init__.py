"""Scheduled jobs — store, schedule evaluation and the due-job poller."""

from taskbot.core.cron.jobs import JobStore
from taskbot.core.cron.scheduler import JobScheduler

__all__ = ["JobStore", "JobScheduler"]
