"""Tests for MCP server."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cardquery.card_store import Scope, SetStore
from cardquery.refresher import RefreshResult
from cardquery.server import SERVER_NAME, CardQueryServer, create_server
from cardquery.set_fetcher import SourceRef

SOURCES = [SourceRef(set_id="base", url="https://sets.example.com/base.json")]


@pytest.fixture
def server(store: SetStore) -> CardQueryServer:
    return CardQueryServer(SOURCES, store=store)


class TestServerToolListing:
    """Test tool registration and listing."""

    def test_server_has_tools(self, server: CardQueryServer):
        """Server should expose expected tools."""
        tool_names = [t.name for t in server.list_tools()]

        assert tool_names == ["search_cards", "lookup_card", "store_status", "refresh_sets"]

    def test_tools_have_descriptions_and_schemas(self, server: CardQueryServer):
        for tool in server.list_tools():
            assert len(tool.description) > 10
            assert tool.inputSchema["type"] == "object"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, server: CardQueryServer):
        result = await server.call_tool("delete_everything", {})
        assert "Unknown tool" in result["error"]


class TestServerSearchCards:
    """Test search_cards tool."""

    @pytest.mark.asyncio
    async def test_search_basic(self, server: CardQueryServer):
        result = await server.call_tool("search_cards", {"query": "cost<3 -tags:rare"})

        names = [c["name"] for c in result["cards"]]
        assert "Stoat" in names
        assert "Wyrm" not in names
        assert result["total_count"] == len(names)
        assert "query_time_ms" in result

    @pytest.mark.asyncio
    async def test_search_scope(self, server: CardQueryServer):
        result = await server.call_tool("search_cards", {"query": "stoat", "sets": ["beast"]})
        assert [c["set"] for c in result["cards"]] == ["beast"]

    @pytest.mark.asyncio
    async def test_search_limit_and_offset(self, server: CardQueryServer):
        """Pagination should slice results but report the full count."""
        everything = await server.call_tool("search_cards", {"query": "health>=1", "limit": 100})
        page = await server.call_tool(
            "search_cards", {"query": "health>=1", "limit": 2, "offset": 1}
        )

        assert page["total_count"] == everything["total_count"]
        assert page["cards"] == everything["cards"][1:3]
        assert page["offset"] == 1

    @pytest.mark.asyncio
    async def test_search_parse_error(self, server: CardQueryServer):
        """Parse errors should be structured for the caller."""
        result = await server.call_tool("search_cards", {"query": "colour:red"})

        assert result["error_type"] == "UnknownField"
        assert "colour" in result["error"]
        assert result["hint"]
        assert result["supported_syntax"]

    @pytest.mark.asyncio
    async def test_search_empty_query(self, server: CardQueryServer):
        result = await server.call_tool("search_cards", {"query": ""})
        assert result["error_type"] == "EmptyQuery"


class TestServerLookupCard:
    """Test lookup_card tool."""

    @pytest.mark.asyncio
    async def test_lookup(self, server: CardQueryServer):
        result = await server.call_tool("lookup_card", {"name": "Grizly"})

        assert result["name"] == "Grizzly"
        assert result["match_rank"] < 1.0

    @pytest.mark.asyncio
    async def test_lookup_runs_off_event_loop(self, server: CardQueryServer):
        """Fuzzy lookup should run in a worker thread like search does."""
        with patch(
            "cardquery.server.asyncio.to_thread", wraps=asyncio.to_thread
        ) as to_thread:
            result = await server.call_tool(
                "lookup_card", {"name": "Grizly", "sets": ["base"]}
            )

        assert result["name"] == "Grizzly"
        func, name, scope = to_thread.call_args.args
        assert func == server.engine.lookup
        assert name == "Grizly"
        assert scope == Scope.one("base")

    @pytest.mark.asyncio
    async def test_lookup_not_found(self, server: CardQueryServer):
        result = await server.call_tool("lookup_card", {"name": "xylophone"})
        assert result["error"] == "Card not found"

    @pytest.mark.asyncio
    async def test_lookup_requires_name(self, server: CardQueryServer):
        result = await server.call_tool("lookup_card", {})
        assert "name" in result["error"]


class TestServerStatus:
    """Test store_status tool."""

    @pytest.mark.asyncio
    async def test_status(self, server: CardQueryServer):
        result = await server.call_tool("store_status", {})

        assert result["set_count"] == 2
        assert result["card_count"] == 10
        assert result["versions"] == {"base": "v1", "beast": "v1"}
        assert result["refresh_status"] == "idle"


class TestServerBackgroundRefresh:
    """Test background refresh task handling."""

    @pytest.mark.asyncio
    async def test_refresh_runs_in_background(self, store: SetStore):
        refresher = MagicMock()
        refresher.refresh_all = AsyncMock(
            return_value=[RefreshResult(set_id="base", status="unchanged", card_count=7)]
        )
        server = CardQueryServer(SOURCES, store=store, refresher=refresher)

        result = await server.call_tool("refresh_sets", {})
        assert result["status"] == "refreshing"

        await asyncio.sleep(0)
        await asyncio.sleep(0)
        status = await server.call_tool("store_status", {})

        refresher.refresh_all.assert_awaited_once_with(SOURCES)
        assert status["refresh_status"] == "completed"
        assert status["last_refresh"][0]["status"] == "unchanged"

    @pytest.mark.asyncio
    async def test_refresh_failure_reported(self, store: SetStore):
        refresher = MagicMock()
        refresher.refresh_all = AsyncMock(side_effect=RuntimeError("boom"))
        server = CardQueryServer(SOURCES, store=store, refresher=refresher)

        await server.call_tool("refresh_sets", {})
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert server._refresh_status == "error: boom"
        assert server._refresh_task is None

    @pytest.mark.asyncio
    async def test_refresh_in_progress_returns_status(self, server: CardQueryServer):
        """Should return status when refresh already in progress."""
        server._refresh_status = "refreshing"
        mock_task = MagicMock()
        mock_task.done.return_value = False
        server._refresh_task = mock_task

        result = await server.call_tool("refresh_sets", {})

        assert result["status"] == "in_progress"
        assert "already in progress" in result["message"]

    @pytest.mark.asyncio
    async def test_refresh_without_sources(self, store: SetStore):
        server = CardQueryServer([], store=store)
        result = await server.call_tool("refresh_sets", {})
        assert result["status"] == "error"

    @pytest.mark.asyncio
    async def test_cleanup_cancels_refresh_task(self, server: CardQueryServer):
        """Server cleanup should cancel any running refresh task."""
        cancelled = False

        async def slow_refresh():
            nonlocal cancelled
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled = True
                raise

        server._refresh_task = asyncio.create_task(slow_refresh())
        await asyncio.sleep(0)

        await server.cleanup()

        assert server._refresh_task is None
        assert cancelled


class TestServerLowLevel:
    """Test low-level MCP server functionality."""

    @pytest.mark.asyncio
    async def test_create_server(self, store: SetStore):
        """Should create MCP server instance and return CardQueryServer for cleanup."""
        server, cardquery = create_server(SOURCES, store=store)

        assert server is not None
        assert cardquery.store is store
        await cardquery.cleanup()

    def test_server_name(self, server: CardQueryServer):
        assert server.name == SERVER_NAME == "cardquery"

    @pytest.mark.asyncio
    async def test_results_are_json_serializable(self, server: CardQueryServer):
        result = await server.call_tool("search_cards", {"query": "r:rare"})
        assert json.loads(json.dumps(result))["total_count"] == 3
