"""TaskBot CLI — Typer-based command-line interface."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from taskbot import __version__

app = typer.Typer(
    name="taskbot",
    help="taskbot - scheduled jobs and background agent tasks",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"taskbot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """taskbot - scheduled jobs and background agent tasks."""


# ════════════════════════════════════════════════════════════
# run — start API server + scheduler
# ════════════════════════════════════════════════════════════


@app.command()
def run(
    port: int = typer.Option(8000, "--port", "-p", help="Port number"),
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Host address"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
) -> None:
    """Start the API server (uvicorn) with the job scheduler."""
    import uvicorn

    console.print(f"[green]Starting taskbot API on {host}:{port}[/green]")
    uvicorn.run("taskbot.api.app:app", host=host, port=port, reload=reload)


# ════════════════════════════════════════════════════════════
# tick — one poll of due jobs
# ════════════════════════════════════════════════════════════


@app.command()
def tick(
    sweep: bool = typer.Option(False, "--sweep", help="Also run the agent task sweep"),
) -> None:
    """Dispatch due jobs once and wait for them to finish."""
    from taskbot.core.config.loader import load_config
    from taskbot.core.runtime import Runtime

    async def _tick() -> tuple[int, int]:
        runtime = Runtime.from_config(load_config())
        await runtime.start(scheduler=False)
        try:
            jobs = await runtime.scheduler.tick()
            tasks = await runtime.task_worker.sweep() if sweep else 0
        finally:
            await runtime.stop()
        return jobs, tasks

    jobs, tasks = asyncio.run(_tick())
    console.print(f"[green]Dispatched {jobs} job(s)[/green]")
    if sweep:
        console.print(f"[green]Queued {tasks} task(s)[/green]")


# ════════════════════════════════════════════════════════════
# status — config + DB info
# ════════════════════════════════════════════════════════════


@app.command()
def status() -> None:
    """Show configuration and database status."""
    from taskbot.core.config.loader import load_config
    from taskbot.memory.store import MemoryStore

    config = load_config()
    db = MemoryStore(config.database.path)

    table = Table(title="taskbot status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Model", config.assistant.model)
    table.add_row("DB Path", config.database.path)
    table.add_row("Default Timezone", config.background.default_timezone)
    table.add_row("Agents", str(db.count_rows("agents")))
    table.add_row("Active Jobs", str(db.count_rows("scheduled_jobs", "status = ?", ("active",))))
    table.add_row("Paused Jobs", str(db.count_rows("scheduled_jobs", "status = ?", ("paused",))))
    table.add_row(
        "Agent Tasks Open",
        str(db.count_rows("tasks", "assignee_type = 'agent' AND status IN ('todo', 'in_progress')")),
    )
    table.add_row("Mail", "enabled" if config.mail_enabled else "disabled")

    console.print(table)


# ════════════════════════════════════════════════════════════
# jobs — scheduled job management (sub-command group)
# ════════════════════════════════════════════════════════════

jobs_app = typer.Typer(help="Manage scheduled jobs", invoke_without_command=True)
app.add_typer(jobs_app, name="jobs")


def _job_store():
    from taskbot.core.config.loader import load_config
    from taskbot.core.cron.jobs import JobStore
    from taskbot.memory.store import MemoryStore

    config = load_config()
    return JobStore(MemoryStore(config.database.path), config)


@jobs_app.callback()
def jobs_list(
    ctx: typer.Context,
    status: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    agent: str | None = typer.Option(None, "--agent", "-a", help="Filter by agent ID"),
) -> None:
    """List scheduled jobs."""
    if ctx.invoked_subcommand is not None:
        return
    jobs = _job_store().list_jobs(agent, status=status)
    if not jobs:
        console.print("[dim]No scheduled jobs found.[/dim]")
        return

    table = Table(title="Scheduled Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Type", style="blue")
    table.add_column("Title", style="white")
    table.add_column("Schedule", style="yellow")
    table.add_column("Next Run (UTC)", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Failures", style="red")

    for job in jobs:
        table.add_row(
            job["id"],
            f"{job['job_type']}/{job['action_type']}",
            job["title"],
            job["cron_expression"] or job["run_at"],
            job["next_run_at"],
            job["status"],
            str(job["failure_count"]),
        )

    console.print(table)


def _change(job_id: str, action: str) -> None:
    from taskbot.core.errors import TaskbotError

    store = _job_store()
    try:
        if action == "cancel":
            job = store.cancel_job(job_id)
        else:
            job = store.update_job(job_id, {"status": "paused" if action == "pause" else "active"})
    except TaskbotError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Job {job_id}:[/green] {job['status']} (next run {job['next_run_at']})")


@jobs_app.command("cancel")
def jobs_cancel(job_id: str = typer.Argument(help="Job ID to cancel")) -> None:
    """Cancel a job."""
    _change(job_id, "cancel")


@jobs_app.command("pause")
def jobs_pause(job_id: str = typer.Argument(help="Job ID to pause")) -> None:
    """Pause a job."""
    _change(job_id, "pause")


@jobs_app.command("resume")
def jobs_resume(job_id: str = typer.Argument(help="Job ID to resume")) -> None:
    """Resume a paused job (clears its failure count)."""
    _change(job_id, "resume")


# ════════════════════════════════════════════════════════════
# agent — agent management
# ════════════════════════════════════════════════════════════

agent_app = typer.Typer(help="Manage agents")
app.add_typer(agent_app, name="agent")


@agent_app.command("add")
def agent_add(
    user_id: str = typer.Argument(help="Owner user ID"),
    name: str = typer.Option("TaskBot", "--name", "-n", help="Agent name"),
    user_name: str | None = typer.Option(None, "--user-name", help="Owner display name"),
    email: str | None = typer.Option(None, "--email", "-e", help="Owner email"),
    timezone: str | None = typer.Option(None, "--timezone", "-t", help="IANA timezone"),
) -> None:
    """Create an agent acting for a user."""
    from taskbot.core.config.loader import load_config
    from taskbot.memory.store import MemoryStore

    config = load_config()
    db = MemoryStore(config.database.path)
    agent_id = db.create_agent(
        user_id, name=name, user_name=user_name, user_email=email, timezone=timezone
    )
    console.print(f"[green]Agent created:[/green] {agent_id}")


if __name__ == "__main__":
    app()
