"""Background services — task run-state, task worker, project work and email processing."""

from taskbot.core.background.email_worker import EmailWorker
from taskbot.core.background.project_worker import ProjectWorker
from taskbot.core.background.runstate import TaskRunStateCoordinator
from taskbot.core.background.task_worker import TaskWorker

__all__ = ["EmailWorker", "ProjectWorker", "TaskRunStateCoordinator", "TaskWorker"]
