"""
Chargur CLI - Typer Commands

    chargur chat --project P --stage S    interactive chat with live streaming
    chargur status CONVERSATION_ID        checkpoint / recovery diagnostics
    chargur logs [--type] [--stats]       view and analyze JSONL logs
"""

import asyncio
import json

import typer
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from chargur.config import STAGE_IDS, EngineConfig, load_config, resolve_credentials
from chargur.engine import (
    AutoFillUpdate,
    EngineEventType,
    EngineSnapshot,
    RecoveryController,
    SessionKey,
    StreamingConversationEngine,
)
from chargur.exceptions import ChargurError, ConfigError
from chargur.logging.viewer import (
    LOG_TYPES,
    calculate_stats,
    format_entry_line,
    format_stats,
    query_logs,
)
from chargur.store import CheckpointStoreClient

console = Console()

app = typer.Typer(
    name="chargur",
    help="Streaming conversation engine for the app-design wizard",
    add_completion=False,
    no_args_is_help=True,
)


def _load_config_or_exit() -> EngineConfig:
    try:
        return load_config()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


def _render(snapshot: EngineSnapshot) -> Panel:
    """Panel showing the response streamed so far."""
    if snapshot.error:
        return Panel(f"[red]{snapshot.error}[/red]", title="Assistant", border_style="red")
    if not snapshot.content:
        return Panel("[dim]Thinking...[/dim]", title="Assistant", border_style="blue")
    border = "green" if snapshot.is_complete else "blue"
    return Panel(Markdown(snapshot.content), title="Assistant", border_style=border)


def _show_history(snapshot: EngineSnapshot) -> None:
    if not snapshot.history_messages:
        return
    console.print(f"[dim]Resumed conversation with {len(snapshot.history_messages)} messages[/dim]")
    for message in snapshot.history_messages[-4:]:
        label = "You" if message.role.value == "user" else "Assistant"
        console.print(f"[bold]{label}:[/bold] {message.content[:200]}")


def _show_auto_fill(update: AutoFillUpdate) -> None:
    table = Table(title="Auto-fill", show_header=True)
    table.add_column("Stage", style="cyan")
    table.add_column("Field")
    table.add_column("Value")
    for stage_id, fields in update.stages.items():
        for name, value in fields.items():
            text = value if isinstance(value, str) else json.dumps(value)
            table.add_row(stage_id, name, text[:80])
    console.print(table)


async def _chat(project: str, stage: str) -> None:
    config = _load_config_or_exit()
    credentials = await resolve_credentials(config.credential_provider)
    if credentials is None:
        console.print("[red]Not signed in.[/red] Export CHARGUR_ACCESS_TOKEN and CHARGUR_USER_ID.")
        raise typer.Exit(1)

    async with StreamingConversationEngine(config) as engine:
        engine.subscribe(EngineEventType.AUTO_FILL, _show_auto_fill)
        engine.subscribe(
            EngineEventType.STAGE_COMPLETE,
            lambda stage_id: console.print(f"[green]Stage complete:[/green] {stage_id}"),
        )
        engine.subscribe(
            EngineEventType.NAVIGATE,
            lambda stage_id: console.print(f"[yellow]Assistant suggests moving to:[/yellow] {stage_id}"),
        )

        try:
            snapshot = await engine.start(SessionKey(project, stage, credentials.user_id))
        except ChargurError as e:
            console.print(f"[red]Could not load conversation:[/red] {e}")
            raise typer.Exit(1)

        console.print(Panel(f"[bold]{project}[/bold] / {stage}", title="Chargur", border_style="cyan"))
        _show_history(snapshot)
        console.print("[dim]/retry to resend after an error, /quit to exit[/dim]")

        while True:
            text = Prompt.ask("[bold]You[/bold]").strip()
            if not text:
                continue
            if text in ("/quit", "/exit"):
                break

            with Live(_render(engine.snapshot), console=console, refresh_per_second=12) as live:
                unsubscribe = engine.subscribe(EngineEventType.STATE, lambda s: live.update(_render(s)))
                try:
                    if text == "/retry":
                        await engine.retry_last()
                    else:
                        await engine.send_message(text)
                finally:
                    unsubscribe()

            snapshot = engine.snapshot
            if snapshot.suggestions:
                for i, suggestion in enumerate(snapshot.suggestions, 1):
                    console.print(f"  [cyan]{i}.[/cyan] {suggestion}")


@app.command()
def chat(
    project: str = typer.Option(..., "--project", "-p", help="Project ID"),
    stage: str = typer.Option(STAGE_IDS[0], "--stage", "-s", help="Stage ID"),
) -> None:
    """Chat with the assistant for one stage of a project."""
    if stage not in STAGE_IDS:
        console.print(f"[yellow]Unknown stage '{stage}'.[/yellow] Known: {', '.join(STAGE_IDS)}")
    try:
        asyncio.run(_chat(project, stage))
    except KeyboardInterrupt:
        console.print("\n[dim]Goodbye[/dim]")


async def _status(conversation_id: str) -> None:
    config = _load_config_or_exit()
    async with CheckpointStoreClient(config) as store:
        status = await RecoveryController(store).status(conversation_id)

    table = Table(title=f"Conversation {conversation_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Exists", str(status.conversation_exists))
    table.add_row("Status", status.conversation_status or "-")
    table.add_row("Tokens", str(status.token_count))
    table.add_row("Last token index", str(status.last_token_index))
    table.add_row("Complete response", str(status.is_complete))
    table.add_row("Can recover", str(status.can_recover))
    console.print(table)

    if status.issues:
        for issue in status.issues:
            console.print(f"  [yellow]•[/yellow] {issue}")
    else:
        console.print("[green]No integrity issues[/green]")


@app.command()
def status(conversation_id: str = typer.Argument(..., help="Conversation ID to inspect")) -> None:
    """Show checkpoint and recovery status for a conversation."""
    try:
        asyncio.run(_status(conversation_id))
    except ChargurError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def logs(
    log_type: str = typer.Option("all", "--type", "-t", help=f"Log type: {', '.join(LOG_TYPES)}, all"),
    since: str = typer.Option(None, "--since", "-s", help="Time filter (ISO or relative: 1h, 30m, 2d)"),
    conversation: str = typer.Option(None, "--conversation", "-c", help="Filter by conversation ID"),
    outcome: str = typer.Option(None, "--outcome", help="Filter attempts by outcome"),
    tail: int = typer.Option(20, "--tail", "-n", help="Show last N entries"),
    stats: bool = typer.Option(False, "--stats", help="Show statistics instead of entries"),
) -> None:
    """View and analyze Chargur logs."""

    def print_entry(entry: dict) -> None:
        line = format_entry_line(entry)
        if entry.get("error"):
            console.print(f"[red]{line}[/red]")
        elif entry.get("_source") == "stream":
            console.print(f"[cyan]{line}[/cyan]")
        else:
            console.print(f"[dim]{line}[/dim]")

    try:
        entries = query_logs(
            log_type=log_type,
            since=since,
            conversation_id=conversation,
            outcome=outcome,
            limit=tail if not stats else 1000,
        )

        if not entries:
            console.print("[dim]No log entries found[/dim]")
            return

        if stats:
            console.print(format_stats(calculate_stats(entries)))
        else:
            for entry in reversed(entries[:tail]):
                print_entry(entry)

    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except OSError as e:
        console.print(f"[red]Error reading logs:[/red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
