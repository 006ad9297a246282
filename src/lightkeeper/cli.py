"""Command line interface for Lightkeeper.

Provides commands to run the API server, trigger calendar syncs and email
scans, and manage users from a terminal.
"""

import asyncio
import logging
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import get_config
from .context import AppContext, build_context
from .models import UserRole
from .sync.models import EmailScanOutcome, EmailScanSummary, SyncOutcome, SyncSummary
from .sync.provider import ProviderError


console = Console()
logger = logging.getLogger(__name__)


def configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def run_with_context(coro_factory):
    """Build a context, run ``coro_factory(context)`` and close the context."""
    async def runner():
        context = build_context()
        try:
            return await coro_factory(context)
        finally:
            await context.aclose()

    return asyncio.run(runner())


def require_calendar(context: AppContext):
    if not context.calendar_configured:
        raise click.ClickException(
            "Calendar provider not configured. Set NYLAS_API_KEY and NYLAS_GRANT_ID."
        )


def outcome_table(outcomes, title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold blue")
    table.add_column("User")
    table.add_column("Events", justify="right")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Existing", justify="right")
    table.add_column("No start", justify="right")
    table.add_column("Past", justify="right")
    table.add_column("Errors", justify="right", style="red")

    for outcome in outcomes:
        table.add_row(
            outcome.user_email or str(outcome.user_id),
            str(outcome.total_events),
            str(outcome.tasks_created),
            str(outcome.skipped_existing),
            str(outcome.skipped_missing_start),
            str(outcome.skipped_past),
            str(len(outcome.errors)),
        )
    return table


def require_email(context: AppContext):
    if not context.email_configured or not context.grant_id:
        raise click.ClickException(
            "Email provider not configured. Set NYLAS_API_KEY and NYLAS_GRANT_ID."
        )


def email_outcome_table(outcomes, title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold blue")
    table.add_column("User")
    table.add_column("Scanned", justify="right")
    table.add_column("Found", justify="right")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Seen", justify="right")
    table.add_column("Errors", justify="right", style="red")

    for outcome in outcomes:
        table.add_row(
            outcome.user_email or str(outcome.user_id),
            str(outcome.total_scanned),
            str(outcome.tasks_found),
            str(outcome.tasks_created),
            str(outcome.skipped_processed),
            str(len(outcome.errors)),
        )
    return table


@click.group()
@click.version_option(__version__, prog_name="lightkeeper")
@click.option("--log-level", default=None, help="Override the configured log level")
def main(log_level: Optional[str]):
    """Lightkeeper task and calendar sync service."""
    configure_logging((log_level or get_config().log_level).upper())


@main.command()
@click.option("--host", default="127.0.0.1", help="Host to bind the server to", show_default=True)
@click.option("--port", default=8080, type=int, help="Port to bind the server to", show_default=True)
@click.option("--reload", is_flag=True, help="Enable auto-reload on code changes")
def serve(host: str, port: int, reload: bool):
    """Start the Lightkeeper API server."""
    import uvicorn

    config = get_config()
    content = Text()
    content.append("Server will start at: ", style="white")
    content.append(f"http://{host}:{port}", style="bold green")
    content.append("\nAPI docs: ", style="white")
    content.append(f"http://{host}:{port}/docs", style="green")
    content.append("\nCalendar sync: ", style="white")
    if config.provider_configured:
        content.append(f"every {config.calendar_sync_interval_minutes} minutes", style="bold cyan")
    else:
        content.append("not configured", style="bold yellow")
    content.append("\nEmail scan: ", style="white")
    if config.provider_configured and config.email_scan_enabled:
        content.append(f"every {config.email_scan_interval_minutes} minutes", style="bold cyan")
    else:
        content.append("disabled", style="bold yellow")

    console.print(Panel(content, title=Text("Lightkeeper", style="bold cyan"),
                        border_style="cyan", padding=(1, 2)))

    uvicorn.run(
        "lightkeeper.webapp.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=config.log_level.lower(),
    )


@main.command()
@click.option("--user-id", type=int, default=None, help="Sync one user instead of all users")
def sync(user_id: Optional[int]):
    """Run one calendar sync pass now."""
    async def run(context: AppContext):
        require_calendar(context)
        if user_id is not None:
            return await context.engine.manual_sync(user_id, context.grant_id)
        return await context.scheduler.run_pass()

    try:
        result = run_with_context(run)
    except ProviderError as e:
        raise click.ClickException(f"Calendar provider error: {e}")

    if isinstance(result, SyncOutcome):
        console.print(outcome_table([result], "Calendar sync"))
        errors = result.errors
    else:
        summary: SyncSummary = result
        console.print(outcome_table(summary.outcomes, "Calendar sync pass"))
        console.print(
            f"{summary.total_tasks_created} tasks created from {summary.total_events} events "
            f"for {summary.total_users} users in {summary.duration_seconds:.2f}s"
        )
        errors = [e for o in summary.outcomes for e in o.errors]

    for error in errors:
        console.print(f"  {error}", style="red")


@main.command(name="scan-email")
@click.option("--user-id", type=int, default=None, help="Scan one user's inbox instead of all users")
def scan_email(user_id: Optional[int]):
    """Run one email scan pass now."""
    async def run(context: AppContext):
        require_email(context)
        if user_id is not None:
            return await context.email_engine.manual_scan(user_id, context.grant_id)
        return await context.email_scheduler.run_pass()

    try:
        result = run_with_context(run)
    except ProviderError as e:
        raise click.ClickException(f"Email provider error: {e}")

    if isinstance(result, EmailScanOutcome):
        console.print(email_outcome_table([result], "Email scan"))
        errors = result.errors
    else:
        summary: EmailScanSummary = result
        console.print(email_outcome_table(summary.outcomes, "Email scan pass"))
        console.print(
            f"{summary.total_tasks_created} tasks created from {summary.total_scanned} emails "
            f"for {summary.total_users} users in {summary.duration_seconds:.2f}s"
        )
        errors = [e for o in summary.outcomes for e in o.errors]

    for error in errors:
        console.print(f"  {error}", style="red")


@main.command(name="create-user")
@click.option("--email", required=True, help="Email address")
@click.option("--name", required=True, help="Display name")
@click.option("--role", type=click.Choice([r.value for r in UserRole]), default=UserRole.MEMBER.value,
              show_default=True, help="Account role")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True,
              help="Login password")
def create_user(email: str, name: str, role: str, password: str):
    """Add a user."""
    async def run(context: AppContext):
        return await context.auth_service.register_user(
            email=email, name=name, password=password, role=UserRole(role)
        )

    try:
        user = run_with_context(run)
    except ValueError as e:
        raise click.ClickException(str(e))

    console.print(f"Created {user.role.value} {user.email} (id={user.id})", style="green")


@main.command()
def calendars():
    """List calendars of the configured calendar account."""
    async def run(context: AppContext):
        require_calendar(context)
        return await context.provider.fetch_calendars(context.grant_id)

    try:
        items = run_with_context(run)
    except ProviderError as e:
        raise click.ClickException(f"Calendar provider error: {e}")

    if not items:
        console.print("No calendars found.", style="yellow")
        return

    table = Table(title="Calendars", show_header=True, header_style="bold blue")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Primary")
    table.add_column("Read only")
    for item in items:
        table.add_row(item.id, item.name, "yes" if item.is_primary else "", "yes" if item.read_only else "")
    console.print(table)


@main.command()
@click.option("--user-id", type=int, required=True, help="User to report on")
def stats(user_id: int):
    """Show calendar sync statistics for a user."""
    async def run(context: AppContext):
        return await context.record_store.get_stats(user_id, context.clock())

    data = run_with_context(run)
    console.print(
        f"Synced: {data['total_synced']}  Upcoming: {data['upcoming_events']}  Past: {data['past_events']}"
    )

    if data['recent_syncs']:
        table = Table(title="Recent syncs", show_header=True, header_style="bold blue")
        table.add_column("Event")
        table.add_column("Starts")
        table.add_column("Task", justify="right")
        table.add_column("Direction")
        for record in data['recent_syncs']:
            table.add_row(
                record['event_title'],
                record['event_start_time'] or "",
                str(record['task_id'] or ""),
                record['sync_direction'],
            )
        console.print(table)


if __name__ == "__main__":
    main()
