"""
CLI interface for the FutureSelf caller.
Provides the cron trigger for scheduled calls, manual call/reconcile commands,
and the API server.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from futureself.config import get_settings
from futureself.logging_config import setup_logging
from futureself.phone_utils import format_for_display

app = typer.Typer(
    name="futureself",
    help="Calls from your past and future self",
    add_completion=False,
)
console = Console()


def _run(coro):
    """Helper to run async code from sync CLI."""
    return asyncio.run(coro)


def _print_outcome(outcome, title: str) -> None:
    if not outcome.ok:
        console.print(f"[red]✗ {title} failed ({outcome.kind}):[/red] {outcome.message}")
        raise typer.Exit(code=1)
    console.print(f"\n[green]✓ {title}[/green]")
    for k, v in outcome.data.items():
        console.print(f"  {k}: {v}")


@app.command("run-due")
def run_due(
    limit: Optional[int] = typer.Option(None, help="Max scheduled calls to claim this sweep"),
):
    """Claim and dial due scheduled calls (run this from cron)."""
    settings = get_settings()
    setup_logging(settings)

    async def _do():
        from futureself.runtime import Runtime

        rt = Runtime(settings)
        await rt.start()
        try:
            _print_outcome(await rt.claimer.run_due_calls(limit), "Due-call sweep complete")
        finally:
            await rt.stop()

    _run(_do())


@app.command("start-call")
def start_call(user_id: str = typer.Argument(..., help="User to call now")):
    """Have the user's future self call them now."""
    settings = get_settings()
    setup_logging(settings)

    async def _do():
        from futureself.runtime import Runtime

        rt = Runtime(settings)
        await rt.start()
        try:
            _print_outcome(await rt.dispatcher.start_call(user_id), "Call placed")
        finally:
            await rt.stop()

    _run(_do())


@app.command()
def reconcile(user_id: str = typer.Argument(..., help="User whose calls to reconcile")):
    """Resolve the user's stuck calls against the provider."""
    settings = get_settings()
    setup_logging(settings)

    async def _do():
        from futureself.runtime import Runtime

        rt = Runtime(settings)
        await rt.start()
        try:
            outcome = await rt.dispatcher.reconcile_outcome(user_id)
            if not outcome.ok:
                _print_outcome(outcome, "Reconcile")
            active = outcome.data["active"]
            console.print(f"\n[green]✓ Reconciled[/green]: {len(active)} call(s) still active")
            for call in active:
                console.print(f"  {call['id']}  {call['status']}  {call.get('conversation_id') or '-'}")
        finally:
            await rt.stop()

    _run(_do())


@app.command()
def status(user_id: str = typer.Argument(..., help="User to inspect")):
    """Show profile, scheduled calls and completed calls for a user."""
    settings = get_settings()
    setup_logging(settings, json_logs=False)

    async def _do():
        from futureself.runtime import Runtime

        rt = Runtime(settings)
        await rt.start()
        try:
            profile = await rt.store.get_profile(user_id)
            if profile is None:
                console.print(f"[red]No profile for {user_id}[/red]")
                raise typer.Exit(code=1)

            table = Table(title=f"Profile {user_id}")
            table.add_column("Field", style="cyan")
            table.add_column("Value", justify="right")
            table.add_row("setup_status", profile.setup_status.value)
            table.add_row(
                "phone",
                format_for_display(profile.phone_e164, settings.default_phone_region)
                if profile.phone_e164
                else "-",
            )
            table.add_row("voice_id", profile.voice_id or "-")
            table.add_row("agent_id", profile.agent_id or "-")
            console.print(table)

            scheduled = await rt.store.list_scheduled_calls(user_id)
            table = Table(title="Scheduled calls")
            table.add_column("ID", style="cyan")
            table.add_column("Scheduled for")
            table.add_column("Status")
            table.add_column("Attempts", justify="right")
            table.add_column("Failure")
            for row in scheduled:
                table.add_row(
                    row.id,
                    row.scheduled_for.isoformat(),
                    row.status.value,
                    str(row.attempt_count),
                    (row.failure_reason or "")[:60],
                )
            console.print(table)

            active = await rt.store.list_active_calls(user_id)
            completed = await rt.store.list_completed_calls(user_id)
            table = Table(title="Calls")
            table.add_column("ID", style="cyan")
            table.add_column("Origin")
            table.add_column("Status")
            table.add_column("Duration (s)", justify="right")
            for call in [*active, *completed]:
                table.add_row(
                    call.id,
                    call.origin.value,
                    call.status.value,
                    "-" if call.duration_seconds is None else str(call.duration_seconds),
                )
            console.print(table)
        finally:
            await rt.stop()

    _run(_do())


@app.command("init-db")
def init_db():
    """Create the local SQLite schema."""
    settings = get_settings()
    setup_logging(settings)

    async def _do():
        from futureself.database import SQLiteRecordStore

        settings.ensure_dirs()
        store = SQLiteRecordStore(settings.database_path)
        await store.connect()
        await store.close()
        console.print(f"[green]✓ Database ready at {settings.database_path}[/green]")

    _run(_do())


@app.command()
def serve():
    """Run the API server."""
    settings = get_settings()
    setup_logging(settings)

    async def _do():
        import uvicorn

        from futureself.server import create_app

        config = uvicorn.Config(
            create_app(settings),
            host=settings.host,
            port=settings.port,
            log_level="info",
        )
        server = uvicorn.Server(config)
        console.print(f"\n[green]API server running on {settings.host}:{settings.port}[/green]")
        await server.serve()

    _run(_do())


if __name__ == "__main__":
    app()
