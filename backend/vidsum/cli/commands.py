"""CLI commands for vidsum using Typer and Rich.

Commands:
- serve: Run the HTTP API with uvicorn
- submit: Create a job for a video and run it to a terminal state
- status: Show a job's status snapshot
- list: List an owner's jobs in a table
- retry: Retry a failed job and run it to a terminal state
- cleanup: Remove a job's working directory
"""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vidsum import configure_logging
from vidsum.config import settings
from vidsum.errors import VidsumError
from vidsum.orchestrator.state import Stage, is_in_flight
from vidsum.schemas.job import ProcessingJob, StatusSnapshot, VideoReference
from vidsum.services.container import Services, build_services
from vidsum.workers.triggers import (
    CleanupRequested,
    JobSubmitted,
    RetryRequested,
    handle_cleanup_requested,
    handle_job_submitted,
    handle_retry_requested,
)

app = typer.Typer(name="vidsum", help="Video summarization job orchestrator")
console = Console()

DEFAULT_OWNER = "cli"


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override logging.level"),
):
    configure_logging(log_level)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: server.host)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (default: server.port)"),
):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run(
        "vidsum.api.app:app",
        host=host or settings.server.host,
        port=port or settings.server.port,
        reload=False,
    )


@app.command()
def submit(
    video_url: str = typer.Argument(..., help="URL of the video to process"),
    title: str = typer.Option(..., "--title", "-t", help="Video title"),
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Stable job id (generated when omitted)"),
    duration: Optional[float] = typer.Option(None, "--duration", "-d", help="Video duration in seconds"),
    description: Optional[str] = typer.Option(None, "--description", help="Video description"),
    channel: Optional[str] = typer.Option(None, "--channel", help="Channel name"),
    owner: str = typer.Option(DEFAULT_OWNER, "--owner", help="Owner user id"),
):
    """Submit a video and run its job until it completes or fails."""
    video = VideoReference(
        video_url=video_url,
        title=title,
        duration=duration,
        description=description,
        channel_name=channel,
    )
    event = JobSubmitted(owner_id=owner, job_id=job_id, video=video)
    asyncio.run(_run_command(_submit_async, event))


async def _submit_async(services: Services, event: JobSubmitted):
    job = await handle_job_submitted(services, event)
    console.print(f"[green]Submitted job:[/green] {job.id}")
    console.print(f"[green]Correlation token:[/green] {job.correlation_token}")
    console.print()
    await _follow(services, job)


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Job id"),
):
    """Show a job's current status."""
    asyncio.run(_run_command(_status_async, job_id))


async def _status_async(services: Services, job_id: str):
    job = await services.store.get(job_id)
    if job is None:
        console.print(f"[red]Error:[/red] Job not found: {job_id}")
        raise typer.Exit(code=1)
    _print_job(job)


@app.command(name="list")
def list_jobs(
    owner: str = typer.Option(DEFAULT_OWNER, "--owner", help="Owner user id"),
):
    """List an owner's jobs."""
    asyncio.run(_run_command(_list_async, owner))


async def _list_async(services: Services, owner: str):
    jobs = await services.store.list_for_owner(owner)
    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Created")

    for job in jobs:
        title = job.video.title if len(job.video.title) <= 50 else job.video.title[:47] + "..."
        color = _get_status_color(job.stage)
        table.add_row(
            job.id[:12],
            title,
            f"[{color}]{job.stage.value}[/{color}]",
            f"{job.progress}%",
            str(job.retry_count),
            job.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@app.command()
def retry(
    job_id: str = typer.Argument(..., help="Failed job id"),
    force: bool = typer.Option(False, "--force", help="Reset the retry count first"),
):
    """Retry a failed job and run it until it completes or fails."""
    asyncio.run(_run_command(_retry_async, RetryRequested(job_id=job_id, force=force)))


async def _retry_async(services: Services, event: RetryRequested):
    job = await handle_retry_requested(services, event)
    console.print(f"[yellow]Retrying job:[/yellow] {job.id} (retry {job.retry_count})")
    console.print()
    await _follow(services, job)


@app.command()
def cleanup(
    job_id: str = typer.Argument(..., help="Job id"),
    work_dir: Optional[str] = typer.Option(None, "--work-dir", help="Directory to remove (inside the job's working directory)"),
):
    """Remove a finished job's working directory."""
    asyncio.run(_run_command(_cleanup_async, job_id, work_dir))


async def _cleanup_async(services: Services, job_id: str, work_dir: Optional[str]):
    await handle_cleanup_requested(services, CleanupRequested(job_id=job_id, work_dir=work_dir))
    await services.dispatcher.drain()
    console.print(f"[green]✓[/green] Cleanup finished for {job_id}")


async def _run_command(command, *args):
    """Run ``command`` against freshly built services and release them after."""
    from vidsum.db import init_database, shutdown

    await init_database()
    services = build_services(settings)
    try:
        await command(services, *args)
    except VidsumError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1)
    finally:
        await services.dispatcher.shutdown()
        await shutdown()


async def _follow(services: Services, job: ProcessingJob):
    """Show progress until the job leaves its in-flight stages."""
    poll_interval = services.settings.stream.poll_interval
    with console.status(f"[bold green]{job.current_step}...") as spinner:
        while is_in_flight(job.stage):
            await asyncio.sleep(poll_interval)
            job = await services.store.get(job.id)
            spinner.update(f"[bold green]{job.current_step} ({job.progress}%)")
    # Let cleanup finish before the loop closes
    await services.dispatcher.drain()

    _print_job(job)
    if job.stage == Stage.FAILED:
        console.print(f"[yellow]You can retry with:[/yellow] vidsum retry {job.id}")
        raise typer.Exit(code=1)


def _print_job(job: ProcessingJob):
    snapshot = StatusSnapshot.from_job(job)
    color = _get_status_color(job.stage)

    info_lines = [
        f"[bold]ID:[/bold] {job.id}",
        f"[bold]Title:[/bold] {job.video.title}",
        f"[bold]Status:[/bold] [{color}]{job.stage.value}[/{color}]",
        f"[bold]Step:[/bold] {snapshot.current_step}",
        f"[bold]Progress:[/bold] {snapshot.progress}%",
        f"[bold]Retries:[/bold] {job.retry_count}",
        f"[bold]Created:[/bold] {job.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"[bold]Updated:[/bold] {job.updated_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    if snapshot.completed_steps:
        info_lines.append(f"[bold]Completed:[/bold] {', '.join(snapshot.completed_steps)}")
    for warning in snapshot.warnings:
        info_lines.append(f"[bold]Warning:[/bold] [yellow]{warning}[/yellow]")
    if snapshot.error:
        info_lines.append(f"[bold]Error:[/bold] [red]{snapshot.error}[/red]")
    if job.timings:
        total = sum(job.timings.values())
        info_lines.append(f"[bold]Stage Time:[/bold] {total:.1f}s")

    console.print(Panel(
        "\n".join(info_lines),
        title="[bold]Job Status[/bold]",
        border_style="blue",
    ))


def _get_status_color(stage: Stage) -> str:
    """Get Rich color for a job stage.

    Color coding:
    - completed: green
    - failed: red
    - in-progress stages: yellow
    - pending: dim
    """
    if stage == Stage.COMPLETED:
        return "green"
    elif stage == Stage.FAILED:
        return "red"
    elif is_in_flight(stage):
        return "yellow"
    return "dim"
