"""
Tests for ToolRegistry: partial connection failure, idempotent connect,
catalog aggregation and similar-tool suggestions.
"""
import pytest

from mcp import types

from src.mcpchat.errors import ServerNotFoundError
from src.mcpchat.tool_registry import ToolRegistry, find_similar_tools
from tests.utils import BROKEN_COMMAND, FakeConnection, make_tool, server


@pytest.fixture(autouse=True)
def reset_fakes():
    FakeConnection.reset()
    yield
    FakeConnection.reset()


@pytest.fixture
def registry():
    return ToolRegistry(connection_factory=FakeConnection)


# ---------------------------------------------------------------------------
# find_similar_tools
# ---------------------------------------------------------------------------

def test_misspelled_server_still_suggests_tool():
    catalog = [("playwright", "browser_navigate"), ("playwright", "navigate"), ("fs", "read_file")]
    suggestions = find_similar_tools("plyawright_navigate", catalog)
    assert "playwright_navigate" in suggestions
    assert "playwright_browser_navigate" in suggestions
    assert "fs_read_file" not in suggestions


def test_short_fragments_are_ignored():
    catalog = [("fs", "read"), ("fs", "get")]
    assert find_similar_tools("fs_get", catalog) == []
    assert find_similar_tools("", catalog) == []


def test_suggestions_are_case_insensitive_and_capped():
    catalog = [("s", f"Search_{i}") for i in range(10)]
    suggestions = find_similar_tools("x_search", catalog)
    assert len(suggestions) == 5
    assert suggestions[0] == "s_Search_0"


def test_no_match_returns_empty_list():
    assert find_similar_tools("weather_forecast", [("fs", "read_file")]) == []


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connect_all_isolates_failing_server(registry):
    configs = [server("filesystem"), server("broken", command=BROKEN_COMMAND), server("memory")]

    connected = await registry.connect_all(configs)

    assert connected == ["filesystem", "memory"]
    assert registry.connected_servers() == ["filesystem", "memory"]
    assert not registry.is_connected("broken")


@pytest.mark.asyncio
async def test_connect_twice_is_noop(registry):
    first = await registry.connect(server("filesystem"))
    second = await registry.connect(server("filesystem"))

    assert first is second
    assert len(FakeConnection.instances) == 1
    assert first.connect_calls == 1


@pytest.mark.asyncio
async def test_duplicate_names_in_config_are_attempted_once(registry):
    connected = await registry.connect_all([server("fs"), server("fs")])
    assert connected == ["fs"]
    assert len(FakeConnection.instances) == 1


@pytest.mark.asyncio
async def test_disconnect_all_closes_every_connection(registry):
    await registry.connect_all([server("a"), server("b")])
    conns = list(FakeConnection.instances)

    await registry.disconnect_all()

    assert registry.connected_servers() == []
    assert all(c.close_calls == 1 for c in conns)


@pytest.mark.asyncio
async def test_disconnect_unknown_server_is_silent(registry):
    await registry.disconnect("ghost")


@pytest.mark.asyncio
async def test_list_tools_of_unknown_server_raises(registry):
    with pytest.raises(ServerNotFoundError) as exc_info:
        await registry.list_tools("ghost")
    assert "ghost" in exc_info.value.message


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_catalog_aggregates_all_servers(registry):
    FakeConnection.catalogs = {
        "filesystem": [make_tool("read_file", "Read a file"), make_tool("write_file")],
        "memory": [make_tool("remember")],
    }
    await registry.connect_all([server("filesystem"), server("memory")])

    catalog = await registry.catalog()

    assert [d.key for d in catalog] == ["filesystem_read_file", "filesystem_write_file", "memory_remember"]
    assert catalog[0].description == "Read a file"
    assert catalog[1].description == "Tool write_file from filesystem"
    assert await registry.list_all_tools() == [
        ("filesystem", "read_file"),
        ("filesystem", "write_file"),
        ("memory", "remember"),
    ]


@pytest.mark.asyncio
async def test_catalog_skips_failing_server(registry):
    FakeConnection.catalogs = {"good": [make_tool("ping")]}
    await registry.connect_all([server("good"), server("flaky")])

    async def boom():
        raise RuntimeError("listing exploded")

    flaky = registry.connections["flaky"]
    flaky.list_tools = boom

    catalog = await registry.catalog()
    assert [d.key for d in catalog] == ["good_ping"]


@pytest.mark.asyncio
async def test_call_tool_routes_to_owning_connection(registry):
    await registry.connect_all([server("a"), server("b")])

    await registry.call_tool("b", "echo", {"text": "hi"})

    assert registry.connections["a"].calls == []
    assert registry.connections["b"].calls == [("echo", {"text": "hi"})]


@pytest.mark.asyncio
async def test_disconnect_all_closes_newest_first(registry):
    await registry.connect_all([server("a"), server("b"), server("c")])

    await registry.disconnect_all()

    assert FakeConnection.closed == ["c", "b", "a"]


@pytest.mark.asyncio
async def test_reconnected_server_closes_before_older_ones(registry):
    await registry.connect_all([server("a"), server("b")])
    registry.connections["a"].session = None  # dropped transport

    await registry.connect(server("a"))
    await registry.disconnect_all()

    assert FakeConnection.closed == ["a", "b"]


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_resources_routes_to_server(registry):
    readme = types.Resource(uri="file:///project/README.md", name="README.md")
    FakeConnection.resources = {"filesystem": [readme]}
    await registry.connect_all([server("filesystem"), server("memory")])

    assert await registry.list_resources("filesystem") == [readme]
    assert await registry.list_resources("memory") == []


@pytest.mark.asyncio
async def test_list_resources_of_unknown_server_raises(registry):
    with pytest.raises(ServerNotFoundError):
        await registry.list_resources("ghost")
