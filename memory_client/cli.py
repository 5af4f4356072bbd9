#!/usr/bin/env python3
"""
Memory Client CLI - Operator Interface for the Memory Context Server

Thin command-line wrapper over MemoryClient for inspecting and editing a
user's stored facts and checking server health.

Commands:
    health    Probe the server health endpoint and show client state.
    facts     List a user's facts (optionally filtered).
    add       Store a new subject/predicate/object fact.
    update    Change fields of an existing fact.
    delete    Remove a fact.
    summary   Per-predicate fact counts for a user.

Global options (must come BEFORE the subcommand):
    --server-url URL    Override MEMORY_SERVER_URL for this invocation.
    --log-level LEVEL   Override LOG_LEVEL for this invocation.

Exit codes:
    0   Success.
    1   The server was unreachable or rejected the operation.
    2   Usage or configuration error.

Usage::

    python -m memory_client health
    python -m memory_client facts user-123 --predicate likes
    python -m memory_client add user-123 user likes tea
    python -m memory_client --server-url http://memory:3001 summary user-123
"""

import asyncio
import json
import signal
import sys
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from . import __version__
from .client import MemoryClient, memory_session
from .config import Settings, configure_logging, get_settings
from .context import filter_relevant_facts
from .models import CreateFact, UpdateFact

T = TypeVar("T")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------

def _install_sigterm_handler(task: "asyncio.Task[Any]") -> None:
    """Cancel *task* on SIGTERM so the scoped client is released.

    No-op where ``loop.add_signal_handler`` is unavailable (e.g. Windows).
    """
    try:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, task.cancel)
    except (NotImplementedError, RuntimeError):
        pass


async def _with_client(settings: Settings, action: Callable[[MemoryClient], Awaitable[T]]) -> T:
    task = asyncio.current_task()
    if task is not None:
        _install_sigterm_handler(task)
    async with memory_session(settings) as client:
        return await action(client)


def _run(ctx: click.Context, action: Callable[[MemoryClient], Awaitable[T]]) -> T:
    """Run *action* against a scoped client; exit 1 if interrupted."""
    console: Console = ctx.obj["console"]
    try:
        return asyncio.run(_with_client(ctx.obj["settings"], action))
    except (asyncio.CancelledError, KeyboardInterrupt):
        console.print("[yellow]Interrupted - connection released.[/yellow]")
        sys.exit(1)


def _report(console: Console, ok: bool, success: str, failure: str) -> None:
    if ok:
        console.print(f"  [bold green]✓[/bold green] {success}")
    else:
        console.print(f"  [bold red]✗[/bold red] {failure}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------

@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="memory-client")
@click.option(
    "--server-url",
    "server_url",
    default=None,
    metavar="URL",
    help="Override MEMORY_SERVER_URL for this invocation.",
)
@click.option(
    "--log-level",
    "log_level",
    default=None,
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    metavar="LEVEL",
    help="Override LOG_LEVEL for this invocation.",
)
@click.pass_context
def cli(ctx: click.Context, server_url: Optional[str], log_level: Optional[str]) -> None:
    """Memory context server client.

    Configuration is read from environment variables or a .env file;
    see memory_client/config/settings.py for the MEMORY_SERVER_*, RETRY_*,
    CIRCUIT_BREAKER_* and LOG_* options.

    \b
    Examples:
        memory-client health
        memory-client --log-level DEBUG facts user-123
    """
    console = Console(highlight=False)
    ctx.ensure_object(dict)

    try:
        settings = get_settings()
        if server_url:
            server = settings.server.model_copy(update={"url": server_url})
            settings = settings.model_copy(update={"server": server})
    except Exception as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(2)

    configure_logging(settings.logging, level=log_level)
    ctx.obj["settings"] = settings
    ctx.obj["console"] = console


# ---------------------------------------------------------------------------
# health command
# ---------------------------------------------------------------------------

@cli.command("health")
@click.option("--json", "output_json", is_flag=True, default=False, help="Output raw JSON.")
@click.pass_context
def health_cmd(ctx: click.Context, output_json: bool) -> None:
    """Probe the server and show circuit breaker and session state.

    Exits 0 when the server is healthy, 1 otherwise.
    """
    console: Console = ctx.obj["console"]
    status = _run(ctx, lambda client: client.health_check())

    if output_json:
        click.echo(json.dumps(status, indent=2, default=str))
    else:
        colour = {"healthy": "green", "degraded": "yellow"}.get(status["status"], "red")
        console.print(f"  Server:  [bold {colour}]{status['status']}[/bold {colour}]")
        if status.get("server"):
            console.print(f"  Name:    {status['server']} {status.get('server_version') or ''}")
        console.print(
            f"  Circuit: {status['circuit_breaker']} "
            f"(failures: {status['failure_count']})"
        )
        if status.get("error"):
            console.print(f"  [dim]{status['error']}[/dim]")

    sys.exit(0 if status["status"] == "healthy" else 1)


# ---------------------------------------------------------------------------
# facts command
# ---------------------------------------------------------------------------

@cli.command("facts")
@click.argument("user_id")
@click.option("--subject", default=None, help="Only facts with this subject.")
@click.option("--predicate", default=None, help="Only facts with this predicate.")
@click.option("--limit", default=None, type=click.IntRange(1, 1000), help="Maximum facts.")
@click.option("--query", default=None, help="Keep facts containing this text (local filter).")
@click.option("--json", "output_json", is_flag=True, default=False, help="Output raw JSON.")
@click.pass_context
def facts_cmd(
    ctx: click.Context,
    user_id: str,
    subject: Optional[str],
    predicate: Optional[str],
    limit: Optional[int],
    query: Optional[str],
    output_json: bool,
) -> None:
    """List the facts stored for USER_ID.

    An unreachable server yields an empty list; run ``health`` to tell
    the two apart.
    """
    console: Console = ctx.obj["console"]
    context = _run(
        ctx,
        lambda client: client.get_facts(user_id, subject=subject, predicate=predicate, limit=limit),
    )
    if query:
        context = filter_relevant_facts(context, query)

    if output_json:
        click.echo(context.model_dump_json(by_alias=True, indent=2))
        return

    if not context.facts:
        console.print(f"  [dim]No facts for {user_id}.[/dim]")
        return

    table = Table(title=f"Facts for {user_id}")
    table.add_column("ID", style="dim")
    table.add_column("Subject")
    table.add_column("Predicate", style="cyan")
    table.add_column("Object")
    for fact in context.facts:
        table.add_row(fact.id or "-", fact.subject, fact.predicate, fact.object)
    console.print(table)


# ---------------------------------------------------------------------------
# add / update / delete commands
# ---------------------------------------------------------------------------

@cli.command("add")
@click.argument("user_id")
@click.argument("subject")
@click.argument("predicate")
@click.argument("object_")
@click.pass_context
def add_cmd(ctx: click.Context, user_id: str, subject: str, predicate: str, object_: str) -> None:
    """Store the fact SUBJECT PREDICATE OBJECT_ for USER_ID."""
    console: Console = ctx.obj["console"]
    try:
        fact = CreateFact(subject=subject, predicate=predicate, object=object_, user_id=user_id)
    except ValidationError as exc:
        raise click.UsageError(f"Invalid fact: {exc.error_count()} empty field(s)")

    ok = _run(ctx, lambda client: client.create_fact(fact))
    _report(console, ok, "Fact stored.", "Fact was not stored.")


@cli.command("update")
@click.argument("fact_id")
@click.option("--subject", default=None)
@click.option("--predicate", default=None)
@click.option("--object", "object_", default=None)
@click.pass_context
def update_cmd(
    ctx: click.Context,
    fact_id: str,
    subject: Optional[str],
    predicate: Optional[str],
    object_: Optional[str],
) -> None:
    """Change one or more fields of fact FACT_ID."""
    console: Console = ctx.obj["console"]
    if subject is None and predicate is None and object_ is None:
        raise click.UsageError("Nothing to update: pass --subject, --predicate or --object")
    try:
        update = UpdateFact(subject=subject, predicate=predicate, object=object_)
    except ValidationError as exc:
        raise click.UsageError(f"Invalid update: {exc.error_count()} empty field(s)")

    ok = _run(ctx, lambda client: client.update_fact(fact_id, update))
    _report(console, ok, f"Fact {fact_id} updated.", f"Fact {fact_id} was not updated.")


@cli.command("delete")
@click.argument("fact_id")
@click.pass_context
def delete_cmd(ctx: click.Context, fact_id: str) -> None:
    """Remove fact FACT_ID."""
    console: Console = ctx.obj["console"]
    ok = _run(ctx, lambda client: client.delete_fact(fact_id))
    _report(console, ok, f"Fact {fact_id} deleted.", f"Fact {fact_id} was not deleted.")


# ---------------------------------------------------------------------------
# summary command
# ---------------------------------------------------------------------------

@cli.command("summary")
@click.argument("user_id")
@click.option("--json", "output_json", is_flag=True, default=False, help="Output raw JSON.")
@click.pass_context
def summary_cmd(ctx: click.Context, user_id: str, output_json: bool) -> None:
    """Show how many facts USER_ID has per predicate."""
    console: Console = ctx.obj["console"]
    summary = _run(ctx, lambda client: client.get_facts_summary(user_id))

    if output_json:
        click.echo(summary.model_dump_json(by_alias=True, indent=2))
        return

    table = Table(title=f"{summary.total_facts} fact(s) for {user_id}")
    table.add_column("Predicate", style="cyan")
    table.add_column("Count", justify="right")
    for predicate, count in sorted(summary.predicate_count.items()):
        table.add_row(predicate, str(count))
    console.print(table)
