"""
MCP stdio server for evna: context fusion tools for AI agents.

Usage:
    evna mcp                                  # stdio server (via CLI)
    claude --mcp-server evna="evna mcp"       # Claude Code integration

All Evna calls are serialized through a single asyncio.Lock. The write
coalescer runs for the lifetime of the server when enabled in evna.toml.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Literal, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .api import Evna
from .errors import EvnaError
from .fusion import format_results

logger = logging.getLogger(__name__)

_evna: Optional[Evna] = None
_lock = asyncio.Lock()


def _get_evna() -> Evna:
    """Lazy-init Evna with default config (respects EVNA_STORE_PATH env).

    Must be called inside ``async with _lock``.
    """
    global _evna
    if _evna is None:
        import os
        store_path = os.environ.get("EVNA_STORE_PATH")
        _evna = Evna(Path(store_path) if store_path else None)
    return _evna


@asynccontextmanager
async def _lifespan(server: FastMCP):
    global _evna
    async with _lock:
        ev = _get_evna()
    try:
        await ev.coalescer.start()
    except FileNotFoundError as e:
        logger.warning("Write coalescer not started: %s", e)
    try:
        yield {}
    finally:
        async with _lock:
            await ev.aclose()
            _evna = None


# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "evna",
    instructions=(
        "Context fusion for ongoing work. "
        "Capture messages with inline annotations (ctx::, project::, meeting::). "
        "Query recent context across clients, and search recent plus historical "
        "context in one call."
    ),
    lifespan=_lifespan,
)


# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)
_WRITES = ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=False)

ClientType = Literal["desktop", "claude_code"]


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(
    description=(
        "Search recent conversation context and historical archives together. "
        "Recent messages come first, then historical matches ranked by similarity."
    ),
    annotations=_READ_ONLY,
)
async def semantic_search(
    query: Annotated[str, Field(
        description="Natural language search query.",
    )],
    limit: Annotated[int, Field(
        description="Maximum results to return.", ge=1, le=50,
    )] = 10,
    project: Annotated[Optional[str], Field(
        description="Project filter (fuzzy match, e.g. 'floatctl' matches 'floatctl-rs').",
    )] = None,
    since: Annotated[Optional[str], Field(
        description="Only results after this ISO timestamp. Defaults to the last 7 days.",
    )] = None,
    threshold: Annotated[float, Field(
        description="Minimum historical similarity (0-1).", ge=0.0, le=1.0,
    )] = 0.5,
) -> str:
    """Fused search."""
    async with _lock:
        ev = _get_evna()
        try:
            results = await ev.search(query, limit=limit, project=project,
                                      since=since, threshold=threshold)
        except (EvnaError, ValueError) as e:
            return f"Error: {e}"
    return format_results(results)


@mcp.tool(
    description=(
        "Query the live active context stream, optionally capturing a message first. "
        "Annotations in captured text (ctx::, project::, meeting::, persona::) are "
        "parsed and stored with the message."
    ),
    annotations=_WRITES,
)
async def active_context(
    capture: Annotated[Optional[str], Field(
        description="Message to capture before querying.",
    )] = None,
    limit: Annotated[int, Field(
        description="Maximum messages to return.", ge=1, le=50,
    )] = 10,
    project: Annotated[Optional[str], Field(
        description="Project filter (fuzzy match).",
    )] = None,
    client_type: Annotated[Optional[ClientType], Field(
        description="Capturing client. Detected from content when omitted.",
    )] = None,
    include_cross_client: Annotated[bool, Field(
        description="Include messages from every client (false: only client_type).",
    )] = True,
    conversation_id: Annotated[Optional[str], Field(
        description="Conversation to capture into. Generated when omitted.",
    )] = None,
) -> str:
    """Capture and query active context."""
    async with _lock:
        ev = _get_evna()
        try:
            if capture:
                await ev.capture(
                    conversation_id or _generate_conversation_id(),
                    "user", capture, client_type=client_type,
                )
            messages = await ev.context(
                limit, project=project,
                client_type=None if include_cross_client else client_type,
            )
        except (EvnaError, ValueError) as e:
            return f"Error: {e}"
        return ev.stream.format_context(messages)


@mcp.tool(
    description=(
        "Client-aware context for one conversation. The first message of a turn "
        "sees every client; later messages only see the calling client's messages."
    ),
    annotations=_READ_ONLY,
)
async def client_context(
    conversation_id: Annotated[str, Field(
        description="The calling conversation.",
    )],
    client_type: Annotated[ClientType, Field(
        description="The calling client.",
    )],
    is_first_message: Annotated[bool, Field(
        description="True on the first message of a turn.",
    )] = True,
    project: Annotated[Optional[str], Field(
        description="Project filter (fuzzy match).",
    )] = None,
    limit: Annotated[int, Field(
        description="Maximum messages to return.", ge=1, le=50,
    )] = 10,
) -> str:
    """Client-aware context."""
    async with _lock:
        ev = _get_evna()
        try:
            session = ev.session(conversation_id, client_type)
            return await session.render(is_first_message, project=project, limit=limit)
        except (EvnaError, ValueError) as e:
            return f"Error: {e}"


def _generate_conversation_id() -> str:
    import secrets
    import time
    return f"conv_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Run the MCP stdio server."""
    import os
    import signal
    # The stdin reader shields its blocking readline from cancellation, so
    # the first Ctrl+C would otherwise be swallowed.
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
