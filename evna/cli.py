"""
CLI interface for evna context fusion.

Usage:
    evna capture "ctx::refactor project::evna working on the parser"
    evna context --project evna
    evna search "what did we decide about the parser?"
    evna watch
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from typing_extensions import Annotated

from .active_context import NO_ACTIVE_CONTEXT
from .api import Evna
from .errors import EvnaError, log_exception
from .fusion import format_results
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import CLIENT_TYPES, ROLES

T = TypeVar("T")

# Configure quiet mode by default (suppress verbose library output)
# Set EVNA_VERBOSE=1 to enable debug mode via environment
if os.environ.get("EVNA_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"evna {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="evna",
    help="Context fusion: recent conversation plus historical search.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="EVNA_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Context fusion: recent conversation plus historical search."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

LimitOption = Annotated[
    Optional[int],
    typer.Option("--limit", "-n", min=1, help="Maximum results to return")
]

ProjectOption = Annotated[
    Optional[str],
    typer.Option("--project", "-p", help="Project filter (fuzzy, comma-separated)")
]


def _get_evna() -> Evna:
    """Open the store, handling errors gracefully."""
    try:
        return Evna(_get_store_override())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _run(action: Callable[[Evna], Awaitable[T]], context: str) -> T:
    """Run one async operation against a freshly opened store."""
    ev = _get_evna()

    async def runner() -> T:
        try:
            return await action(ev)
        finally:
            await ev.aclose()

    try:
        return asyncio.run(runner())
    except (EvnaError, ValueError) as e:
        log_path = log_exception(e, context=f"evna {context}")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise typer.Exit(1)


def _check_choice(value: Optional[str], choices: tuple[str, ...], name: str) -> None:
    if value is not None and value not in choices:
        typer.echo(f"Error: {name} must be one of: {', '.join(choices)}", err=True)
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def capture(
    text: Annotated[str, typer.Argument(help="Message content ('-' reads stdin)")],
    conversation: Annotated[str, typer.Option(
        "--conversation", "-c",
        help="Conversation id the message belongs to"
    )] = "cli",
    role: Annotated[str, typer.Option(
        "--role", "-r",
        help="Message role: user, assistant or system"
    )] = "user",
    client: Annotated[Optional[str], typer.Option(
        "--client",
        help="Capturing client: desktop or claude_code (detected when omitted)"
    )] = None,
):
    """
    Capture a message into the active context stream.

    \b
    Examples:
        evna capture "ctx::2025-10-31 @ 9:00 AM project::evna morning review"
        echo "meeting::standup notes" | evna capture - --role assistant
    """
    _check_choice(role, ROLES, "--role")
    _check_choice(client, CLIENT_TYPES, "--client")
    if text == "-":
        text = sys.stdin.read()
    if not text.strip():
        typer.echo("Error: Nothing to capture", err=True)
        raise typer.Exit(1)

    message = _run(lambda ev: ev.capture(conversation, role, text, client_type=client), "capture")

    if _get_json_output():
        typer.echo(json.dumps(message.to_dict(), indent=2, ensure_ascii=False))
    else:
        markers = ", ".join(str(a) for a in message.markers) or "none"
        typer.echo(f"{message.id} ({message.client_type}) markers: {markers}")


@app.command()
def context(
    project: ProjectOption = None,
    client: Annotated[Optional[str], typer.Option(
        "--client",
        help="Client-aware view for this client: desktop or claude_code"
    )] = None,
    conversation: Annotated[str, typer.Option(
        "--conversation", "-c",
        help="Conversation id for the client-aware view"
    )] = "cli",
    first: Annotated[bool, typer.Option(
        "--first/--subsequent",
        help="First message of a turn sees every client"
    )] = True,
    limit: LimitOption = None,
):
    """
    Show recent messages from the active context stream.

    With --client, uses the client-aware view: --first shows every client,
    --subsequent only the given client's messages.
    """
    _check_choice(client, CLIENT_TYPES, "--client")

    async def action(ev: Evna):
        n = limit or ev.config.retrieval.limit
        if client is None:
            messages = await ev.context(n, project=project)
            return messages, ev.stream.format_context(messages)
        session = ev.session(conversation, client)
        messages = await session.get_client_aware_context(first, project=project, limit=n)
        return messages, session.format_context(messages)

    messages, rendered = _run(action, "context")
    if _get_json_output():
        typer.echo(json.dumps([m.to_dict() for m in messages], indent=2, ensure_ascii=False))
    else:
        typer.echo(rendered if messages else NO_ACTIVE_CONTEXT)


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Natural language search query")],
    limit: LimitOption = None,
    project: ProjectOption = None,
    since: Annotated[Optional[str], typer.Option(
        "--since",
        help="Only results after this ISO timestamp (default: lookback window)"
    )] = None,
    threshold: Annotated[Optional[float], typer.Option(
        "--threshold", "-t",
        min=0.0, max=1.0,
        help="Minimum historical similarity"
    )] = None,
):
    """
    Search recent context and history together.

    \b
    Examples:
        evna search "annotation parser edge cases"
        evna search "deploy" --project floatctl --since 2025-10-01
    """
    results = _run(
        lambda ev: ev.search(query, limit=limit, project=project,
                             since=since, threshold=threshold),
        "search",
    )
    if _get_json_output():
        typer.echo(json.dumps([r.to_dict() for r in results], indent=2, ensure_ascii=False))
    else:
        typer.echo(format_results(results))


@app.command()
def watch():
    """Watch the dispatch directory and trigger syncs until Ctrl+C."""
    async def action(ev: Evna):
        coalescer = ev.coalescer
        if not coalescer.enabled:
            typer.echo("Write coalescer is disabled in evna.toml", err=True)
            return
        await coalescer.start()
        typer.echo(f"Watching {coalescer.watch_dir} (Ctrl+C to stop)", err=True)
        await asyncio.Event().wait()

    try:
        _run(action, "watch")
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def prune(
    hours: Annotated[Optional[int], typer.Option(
        "--hours",
        min=1,
        help="Age threshold in hours (default: active_ttl_hours from config)"
    )] = None,
):
    """Delete active context messages older than the TTL."""
    async def action(ev: Evna):
        return ev.prune(hours)

    count = _run(action, "prune")
    if _get_json_output():
        typer.echo(json.dumps({"deleted": count}))
    else:
        typer.echo(f"Pruned {count} message(s)")


@app.command()
def mcp():
    """Start MCP stdio server for AI agent integration."""
    if _get_store_override() is not None:
        os.environ["EVNA_STORE_PATH"] = str(_get_store_override())
    from .mcp import main as mcp_main
    mcp_main()


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        log_path = log_exception(e, context="evna CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
