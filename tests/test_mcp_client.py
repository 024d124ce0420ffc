import shlex
import sys

import anyio
import pytest

from conftest import XERO_TOOLS, FakeXeroServer
from mcp_client import XeroMCPClient, MCPError, find_contact_id, tool_text
from request_queue import QueueTimeout
from token_cache import BearerToken, TokenLifecycleCache

FAR_FUTURE_MS = 32_503_680_000_000


def _cache(value="bearer-1"):
    async def exchange():
        raise AssertionError("exchange should not be needed")

    return TokenLifecycleCache(exchange, initial=BearerToken(value, FAR_FUTURE_MS))


@pytest.mark.asyncio
async def test_start_passes_bearer_and_initializes(xero_server):
    client = XeroMCPClient(_cache(), command="npx -y @xeroapi/xero-mcp-server@latest", transport=xero_server.transport)
    try:
        await client.start()

        opened = xero_server.opened[0]
        assert opened["command"] == ["npx", "-y", "@xeroapi/xero-mcp-server@latest"]
        assert opened["env"] == {"XERO_CLIENT_BEARER_TOKEN": "bearer-1"}
        assert client.server_info["name"] == "xero-mcp-server"
        assert client.running
    finally:
        await client.stop()


@pytest.mark.asyncio
async def test_call_tool_and_wrappers(xero_server):
    client = XeroMCPClient(_cache(), transport=xero_server.transport)
    try:
        result = await client.list_invoices()
        await client.get_organisation_details()
        await client.update_contact("c-1", {"name": "ABC"})
    finally:
        await client.stop()

    assert tool_text(result) == "called list-invoices"
    assert result.get("isError") in (None, False)
    assert xero_server.calls[0] == ("list-invoices", {"page": 1})
    assert xero_server.calls[1][0] == "list-organisation-details"
    assert xero_server.calls[2] == ("update-contact", {"contactId": "c-1", "name": "ABC"})
    # lazily started once
    assert len(xero_server.opened) == 1


@pytest.mark.asyncio
async def test_list_tools(xero_server):
    client = XeroMCPClient(_cache(), transport=xero_server.transport)
    try:
        tools = await client.list_tools()
    finally:
        await client.stop()

    assert [tool["name"] for tool in tools] == XERO_TOOLS
    assert tools[0]["description"] == "List contacts"
    assert tools[0]["inputSchema"] == {"type": "object"}


@pytest.mark.asyncio
async def test_restarts_when_bearer_changes(xero_server):
    cache = _cache()
    client = XeroMCPClient(cache, transport=xero_server.transport)
    try:
        await client.start()
        cache.seed(BearerToken("bearer-2", FAR_FUTURE_MS))
        await client.list_contacts()

        assert len(xero_server.opened) == 2
        assert xero_server.closed == 1
        assert xero_server.opened[1]["env"]["XERO_CLIENT_BEARER_TOKEN"] == "bearer-2"
    finally:
        await client.stop()


@pytest.mark.asyncio
async def test_server_error_response_raises_mcp_error():
    server = FakeXeroServer(with_tools=False)
    client = XeroMCPClient(_cache(), transport=server.transport)
    try:
        with pytest.raises(MCPError) as exc_info:
            await client.list_tools()
    finally:
        await client.stop()

    assert exc_info.value.code == -32601
    assert "not found" in str(exc_info.value).lower()


@pytest.mark.asyncio
async def test_tool_is_error_raises(xero_server):
    async def reject(arguments):
        raise ValueError("Xero said no")

    xero_server.tools["create-contact"] = reject
    client = XeroMCPClient(_cache(), transport=xero_server.transport)
    try:
        with pytest.raises(MCPError, match="Xero said no") as exc_info:
            await client.create_contact({"name": "x"})
    finally:
        await client.stop()
    assert exc_info.value.data["isError"] is True


@pytest.mark.asyncio
async def test_unanswered_request_times_out(xero_server):
    async def stall(arguments):
        await anyio.sleep(30)
        return "late"

    xero_server.tools["list-accounts"] = stall
    client = XeroMCPClient(_cache(), transport=xero_server.transport, timeout=0.2)
    try:
        with pytest.raises(QueueTimeout):
            await client.list_accounts()
        # the session survives a slow tool
        assert tool_text(await client.list_items()) == "called list-items"
    finally:
        await client.stop()


@pytest.mark.asyncio
async def test_failed_transport_is_reported_and_retried(xero_server):
    attempts = []

    def broken(command, env):
        attempts.append(env)
        if len(attempts) == 1:
            raise FileNotFoundError("spawn npx ENOENT")
        return xero_server.transport(command, env)

    client = XeroMCPClient(_cache(), transport=broken)
    try:
        with pytest.raises(MCPError, match="ENOENT"):
            await client.start()
        assert not client.running

        assert tool_text(await client.list_contacts()) == "called list-contacts"
        assert len(attempts) == 2
    finally:
        await client.stop()


@pytest.mark.asyncio
async def test_stop(xero_server):
    client = XeroMCPClient(_cache(), transport=xero_server.transport)
    await client.start()
    await client.stop()
    assert xero_server.closed == 1
    assert not client.running
    # stopping twice is harmless
    await client.stop()


BIG_RESULT_SERVER = """
from mcp.server.fastmcp import FastMCP

server = FastMCP("xero-mcp-server")

@server.tool(name="list-invoices")
def list_invoices(page: int = 1) -> str:
    return "INV-" + "x" * 100000

server.run()
"""


@pytest.mark.asyncio
async def test_stdio_server_with_large_result():
    client = XeroMCPClient(_cache(), command=shlex.join([sys.executable, "-c", BIG_RESULT_SERVER]), timeout=30)
    try:
        result = await client.list_invoices()
        assert len(tool_text(result)) == 100_004
        assert tool_text(result).startswith("INV-xxx")
        assert client.running
        assert tool_text(await client.list_invoices(page=2)).startswith("INV-")
    finally:
        await client.stop()
    assert not client.running


def test_find_contact_id():
    result = {
        "content": [
            {"type": "text", "text": "Found 2 contacts:"},
            {"type": "text", "text": "Contact: Other Co\nID: 11111111-aaaa-bbbb-cccc-000000000000"},
            {"type": "text", "text": "Contact: ABC Sdn Bhd\nID: 22222222-aaaa-bbbb-cccc-000000000000"},
        ]
    }
    assert find_contact_id(result, "ABC Sdn Bhd") == "22222222-aaaa-bbbb-cccc-000000000000"
    assert find_contact_id(result, "Missing") is None
    assert find_contact_id(None, "ABC") is None
