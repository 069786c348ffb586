"""TaskBot — scheduled jobs and durable agent tasks."""

__version__ = "0.3.0"
