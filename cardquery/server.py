"""MCP server exposing card search over fetched sets.

The server is a thin caller of QueryEngine: it turns tool calls into
search/lookup requests and renders results (or errors) as JSON.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import mcp.server.stdio
import mcp.types as types
from mcp.server.lowlevel import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from cardquery import __version__
from cardquery.card_store import Scope, SetStore
from cardquery.query_engine import ConsistencyFault, QueryEngine
from cardquery.query_parser import SYNTAX_SUMMARY, ParseError
from cardquery.refresher import SetRefresher
from cardquery.set_fetcher import SetFetcher, SourceRef

logger = logging.getLogger(__name__)

# Server name constant - used in multiple places
SERVER_NAME = "cardquery"

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


@dataclass
class Tool:
    """Tool definition for MCP."""

    name: str
    description: str
    inputSchema: dict[str, Any]


SETS_PROPERTY = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Set ids to search (default: all loaded sets)",
}


class CardQueryServer:
    """Card search MCP server.

    Owns the set store, the query engine over it and the refresher that
    keeps it in step with the configured sources.
    """

    name = SERVER_NAME
    version = __version__

    def __init__(
        self,
        sources: list[SourceRef],
        store: SetStore | None = None,
        fetcher: SetFetcher | None = None,
        refresher: SetRefresher | None = None,
    ):
        """Initialize server.

        Args:
            sources: Sets this server serves
            store: Set store (defaults to a new empty store)
            fetcher: Fetch pipeline (defaults to an unrestricted SetFetcher)
            refresher: Refresh policy (defaults to one over fetcher and store)
        """
        self.sources = sources
        self.store = store or SetStore()
        self.fetcher = fetcher or SetFetcher()
        self.refresher = refresher or SetRefresher(self.fetcher, self.store)
        self.engine = QueryEngine(self.store)

        self._refresh_task: asyncio.Task | None = None
        self._refresh_status: str = "idle"
        self._last_refresh: list[dict[str, Any]] = []

    async def cleanup(self) -> None:
        """Clean up all server resources including async tasks.

        Cancels any background refresh and closes the HTTP client.
        """
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

        await self.fetcher.close()

    async def __aenter__(self) -> "CardQueryServer":
        """Enter async context manager."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager and clean up resources."""
        await self.cleanup()

    def list_tools(self) -> list[Tool]:
        """List available tools.

        Returns:
            List of tool definitions
        """
        return [
            Tool(
                name="search_cards",
                description=f"Search cards with a filter query. {SYNTAX_SUMMARY}",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "query": {
                            "type": "string",
                            "description": "Filter query (e.g., 'cost<3 -tags:rare')",
                        },
                        "sets": SETS_PROPERTY,
                        "limit": {
                            "type": "integer",
                            "description": "Maximum results to return (default 20, max 100)",
                            "default": DEFAULT_LIMIT,
                            "minimum": 1,
                            "maximum": MAX_LIMIT,
                        },
                        "offset": {
                            "type": "integer",
                            "description": "Number of results to skip for pagination (default 0)",
                            "default": 0,
                            "minimum": 0,
                        },
                    },
                    "required": ["query"],
                },
            ),
            Tool(
                name="lookup_card",
                description="Get the single card whose name best matches, tolerating typos.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "name": {
                            "type": "string",
                            "description": "Card name (e.g., 'Stoat')",
                        },
                        "sets": SETS_PROPERTY,
                    },
                    "required": ["name"],
                },
            ),
            Tool(
                name="store_status",
                description="Report loaded sets, card counts, source versions "
                "and the state of the last refresh.",
                inputSchema={
                    "type": "object",
                    "properties": {},
                },
            ),
            Tool(
                name="refresh_sets",
                description="Re-fetch all configured sets in the background. "
                "Sets whose source version is unchanged are skipped.",
                inputSchema={
                    "type": "object",
                    "properties": {},
                },
            ),
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Execute a tool.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            Tool result dictionary
        """
        if name == "search_cards":
            return await self._search_cards(arguments)
        elif name == "lookup_card":
            return await self._lookup_card(arguments)
        elif name == "store_status":
            return await self._store_status(arguments)
        elif name == "refresh_sets":
            return await self._refresh_sets(arguments)
        else:
            return {"error": f"Unknown tool: {name}"}

    async def _search_cards(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Search for cards.

        Args:
            arguments: {"query": str, "sets": [str], "limit": int, "offset": int}

        Returns:
            {"cards": [...], "total_count": int, "query_time_ms": int, "offset": int}
        """
        query = arguments.get("query", "")
        scope = Scope.parse(arguments.get("sets"))
        limit = max(1, min(arguments.get("limit", DEFAULT_LIMIT), MAX_LIMIT))
        offset = max(0, arguments.get("offset", 0))

        start_time = time.time()

        try:
            # Evaluation is CPU-bound; keep it off the event loop
            cards = await asyncio.to_thread(self.engine.search, query, scope)
        except ParseError as e:
            return {
                "error": e.message,
                "error_type": type(e).__name__,
                "hint": e.hint,
                "supported_syntax": e.supported_syntax,
            }
        except ConsistencyFault as e:
            return {
                "error": e.message,
                "error_type": type(e).__name__,
                "hint": e.hint,
            }

        elapsed_ms = int((time.time() - start_time) * 1000)

        return {
            "cards": [card.to_dict() for card in cards[offset:offset + limit]],
            "total_count": len(cards),
            "query_time_ms": elapsed_ms,
            "offset": offset,
        }

    async def _lookup_card(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Look up one card by (possibly misspelled) name.

        Args:
            arguments: {"name": str, "sets": [str]}

        Returns:
            Card dictionary with "match_rank", or error
        """
        name = arguments.get("name")
        if not name:
            return {"error": "'name' must be provided"}

        scope = Scope.parse(arguments.get("sets"))
        # Fuzzy ranking walks every card in scope; keep it off the event loop
        best = await asyncio.to_thread(self.engine.lookup, name, scope)
        if best is None:
            return {
                "error": "Card not found",
                "hint": f"Try searching with: search_cards query=\"{name}\"",
            }

        result = best.item.to_dict()
        result["match_rank"] = round(best.rank, 3)
        return result

    async def _store_status(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Get store status.

        Returns:
            {"set_count": int, "card_count": int, "versions": {...}, "refresh_status": str}
        """
        result = self.store.stats().to_dict()
        result["versions"] = self.store.versions()
        result["refresh_status"] = self._refresh_status
        if self._last_refresh:
            result["last_refresh"] = self._last_refresh
        return result

    async def _do_refresh(self) -> None:
        """Refresh every source (runs in background)."""
        try:
            self._refresh_status = "refreshing"
            results = await self.refresher.refresh_all(self.sources)
            self._last_refresh = [r.to_dict() for r in results]
            self._refresh_status = "completed"
        except Exception as e:
            logger.exception("Background refresh failed")
            self._refresh_status = f"error: {e}"
        finally:
            self._refresh_task = None

    async def _refresh_sets(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Start a background refresh.

        Returns:
            {"status": str, "message": str}
        """
        if self._refresh_task is not None and not self._refresh_task.done():
            return {
                "status": "in_progress",
                "message": f"Refresh already in progress: {self._refresh_status}",
            }

        if not self.sources:
            return {
                "status": "error",
                "message": "No sources configured",
            }

        self._refresh_task = asyncio.create_task(self._do_refresh())

        return {
            "status": "refreshing",
            "message": f"Refreshing {len(self.sources)} set(s). Use store_status to check progress.",
        }


def create_server(
    sources: list[SourceRef],
    store: SetStore | None = None,
) -> tuple[Server, CardQueryServer]:
    """Create MCP server instance.

    Args:
        sources: Sets to serve
        store: Optional pre-populated store

    Returns:
        Tuple of (MCP Server, CardQueryServer instance for cleanup)
    """
    cardquery = CardQueryServer(sources, store=store)

    # Create low-level MCP server
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        """Return available tools."""
        tools = cardquery.list_tools()
        return [
            types.Tool(
                name=t.name,
                description=t.description,
                inputSchema=t.inputSchema,
            )
            for t in tools
        ]

    @server.call_tool()
    async def handle_call_tool(
        name: str, arguments: dict[str, Any]
    ) -> list[types.TextContent]:
        """Handle tool execution."""
        result = await cardquery.call_tool(name, arguments or {})
        return [
            types.TextContent(
                type="text",
                text=json.dumps(result, default=str),
            )
        ]

    return server, cardquery


async def run_server(
    sources: list[SourceRef],
    refresh_interval: float | None = None,
) -> None:
    """Run the MCP server over stdio.

    Sets are fetched once before serving. With refresh_interval, a
    background task keeps refreshing them until shutdown.

    Args:
        sources: Sets to serve
        refresh_interval: Seconds between background refresh rounds
    """
    server, cardquery = create_server(sources)

    results = await cardquery.refresher.refresh_all(sources)
    for result in results:
        logger.info("Initial load of %s: %s", result.set_id, result.status)

    periodic: asyncio.Task | None = None
    if refresh_interval:
        periodic = asyncio.create_task(
            cardquery.refresher.run_periodic(sources, refresh_interval)
        )

    try:
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                InitializationOptions(
                    server_name=SERVER_NAME,
                    server_version=__version__,
                    capabilities=server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                ),
            )
    finally:
        if periodic is not None:
            periodic.cancel()
            try:
                await periodic
            except asyncio.CancelledError:
                pass
        await cardquery.cleanup()
