"""Main CLI entry point for reviewflow."""

import asyncio

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__, approvals, conversations, db
from .config import configure_logging, settings
from .errors import ApprovalRequiredError, NotFoundError
from .models import Base, TaskStatus

console = Console()


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Override REVIEWFLOW_LOG_LEVEL")
def main(log_level: str | None) -> None:
    """Review workflow engine CLI.

    Inspect review conversations and task approvals, manage the schema and run the API.
    """
    configure_logging(log_level)


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables directly from the models (development only)."""
    asyncio.run(db.init_db())
    console.print("[green]Tables created[/green]")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> None:
        from sqlalchemy import inspect

        async with db.get_engine().connect() as conn:
            present = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))

        missing = set(Base.metadata.tables) - present
        if missing:
            console.print(f"[red]Missing required tables: {sorted(missing)}[/red]")
            console.print("Run: `alembic upgrade head`")
            raise SystemExit(1)
        console.print("[green]Schema ready[/green]")

    asyncio.run(check())


@main.command()
def db_info() -> None:
    """Show database connection info."""
    if settings.database_url_override:
        body = f"URL: {settings.database_url_override}"
    else:
        body = (
            f"Host: {settings.db_host}\n"
            f"Port: {settings.db_port}\n"
            f"Database: {settings.db_name}\n"
            f"User: {settings.db_user}"
        )
    console.print(Panel(body, title="Database Configuration"))


@main.command(name="create-user")
@click.argument("username")
@click.option("--email", default=None)
@click.option("--display-name", default=None)
def create_user(username: str, email: str | None, display_name: str | None) -> None:
    """Register a user in the user directory."""

    async def do_create() -> None:
        async with db.get_session() as session:
            user = await db.create_user(session, username, email=email, display_name=display_name)
            console.print(f'{{"id": "{user.id}", "username": "{user.username}"}}')

    asyncio.run(do_create())


@main.command(name="create-project")
@click.argument("name")
@click.option("--min-approvals", type=int, default=None, help="Approvals required to complete a task")
def create_project(name: str, min_approvals: int | None) -> None:
    """Create a project."""

    async def do_create() -> None:
        async with db.get_session() as session:
            project = await db.create_project(session, name, min_approvals)
            console.print(
                f'{{"id": "{project.id}", "min_approvals_required": {project.min_approvals_required}}}'
            )

    asyncio.run(do_create())


@main.command(name="create-task")
@click.argument("project_id")
@click.argument("title")
@click.option("--description", default=None)
def create_task(project_id: str, title: str, description: str | None) -> None:
    """Create a task in PROJECT_ID."""

    async def do_create() -> None:
        async with db.get_session() as session:
            project = await db.get_project_by_id(session, project_id)
            if project is None:
                console.print(f'{{"error": "Project not found: {project_id}"}}')
                raise SystemExit(1)
            task = await db.create_task(session, project, title, description=description)
            console.print(f'{{"id": "{task.id}", "status": "{task.status}"}}')

    asyncio.run(do_create())


@main.command(name="set-min-approvals")
@click.argument("project_id")
@click.argument("count", type=int)
def set_min_approvals(project_id: str, count: int) -> None:
    """Set how many approvals PROJECT_ID requires before a task can be completed."""

    async def do_set() -> None:
        async with db.get_session() as session:
            updated = await db.set_min_approvals_required(session, project_id, count)
        if not updated:
            console.print(f"[red]Project not found: {project_id}[/red]")
            raise SystemExit(1)
        console.print(f"[green]Project {project_id} now requires {count} approval(s)[/green]")

    asyncio.run(do_set())


@main.command(name="set-status")
@click.argument("task_id")
@click.argument("status", type=click.Choice([s.value for s in TaskStatus]))
def set_status(task_id: str, status: str) -> None:
    """Move TASK_ID to STATUS, honouring the approval quorum."""

    async def do_update() -> None:
        async with db.get_session() as session:
            task = await approvals.transition_task_status(session, task_id, status)
        console.print(f'{{"id": "{task.id}", "status": "{task.status}"}}')

    try:
        asyncio.run(do_update())
    except ApprovalRequiredError as exc:
        console.print(
            f"[red]Approval required: {exc.approval_count}/{exc.min_approvals_required}[/red]"
        )
        raise SystemExit(1) from None
    except NotFoundError:
        console.print(f"[red]Task not found: {task_id}[/red]")
        raise SystemExit(1) from None


@main.command(name="conversations")
@click.argument("workspace_id")
@click.option("--unresolved", is_flag=True, help="Only show open conversations")
def list_conversations(workspace_id: str, unresolved: bool) -> None:
    """List review conversations in WORKSPACE_ID."""

    async def list_all() -> None:
        async with db.get_session() as session:
            items = await conversations.load_conversations_with_messages(
                session, workspace_id, unresolved_only=unresolved
            )

        if not items:
            console.print("[yellow]No conversations found[/yellow]")
            return

        table = Table(title="Review Conversations")
        table.add_column("ID", style="cyan")
        table.add_column("Location")
        table.add_column("Side")
        table.add_column("Messages", justify="right")
        table.add_column("Status")
        table.add_column("Updated")

        for item in items:
            status = "[green]resolved[/green]" if item.is_resolved else "[yellow]open[/yellow]"
            table.add_row(
                item.id[:8],
                f"{item.file_path}:{item.line_number}",
                item.side,
                str(len(item.messages)),
                status,
                item.updated_at.strftime("%Y-%m-%d %H:%M"),
            )

        console.print(table)

    asyncio.run(list_all())


@main.command(name="approvals")
@click.argument("task_id")
def list_approvals(task_id: str) -> None:
    """Show approvals and quorum status for TASK_ID."""

    async def show() -> None:
        async with db.get_session() as session:
            task = await db.get_task_by_id(session, task_id)
            if task is None:
                console.print(f"[red]Task not found: {task_id}[/red]")
                raise SystemExit(1)
            project = await db.get_project_by_id(session, task.project_id)
            items = await approvals.list_approvals(session, task_id)

        required = project.min_approvals_required if project else 0
        ready = approvals.can_complete(len(items), required)
        console.print(
            Panel(
                f"[bold]{task.title}[/bold]\n\n"
                f"Status: [cyan]{task.status}[/cyan]\n"
                f"Approvals: {len(items)}/{required}\n"
                f"Can complete: {'[green]yes[/green]' if ready else '[red]no[/red]'}",
                title=f"Task: {task.id[:8]}",
            )
        )

        if items:
            table = Table(title="Approvers")
            table.add_column("User", style="cyan")
            table.add_column("Approved at")
            for item in items:
                name = item.user.display_name or item.user.username if item.user else item.user_id
                table.add_row(name, item.created_at.strftime("%Y-%m-%d %H:%M"))
            console.print(table)

    asyncio.run(show())


@main.command()
@click.option("--host", default=None, help="Bind address (default: REVIEWFLOW_API_HOST)")
@click.option("--port", type=int, default=None, help="Bind port (default: REVIEWFLOW_API_PORT)")
@click.option("--init-schema", is_flag=True, help="Create tables on startup")
def serve(host: str | None, port: int | None, init_schema: bool) -> None:
    """Run the HTTP/WebSocket API."""
    import uvicorn

    from .api import create_app

    uvicorn.run(
        create_app(init_schema=init_schema),
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
