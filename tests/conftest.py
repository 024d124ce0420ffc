import sys
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import anyio
import pytest
from mcp import types
from mcp.server.lowlevel import Server
from mcp.shared.memory import create_client_server_memory_streams

sys.path.append(str(Path(__file__).resolve().parents[1]))

from llm_client import LLMProvider, LLMReply, extract_action
from request_queue import RequestSerializer
from session_store import InMemorySessionStore
from utils import safe_dumps

XERO_TOOLS = [
    "list-contacts", "create-contact", "update-contact",
    "list-invoices", "create-invoice", "update-invoice",
    "list-quotes", "create-quote",
    "list-accounts", "list-items",
    "list-payments", "create-payment",
    "list-organisation-details",
]


class FakeClock:
    def __init__(self, now_ms: int = 1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class FakeLLM:
    """Stands in for LLMClient; replies are queued strings or LLMReply objects."""

    def __init__(self, replies: Optional[List[Any]] = None):
        self.replies = list(replies or [])
        self.calls: List[Dict[str, Any]] = []
        self.provider = LLMProvider("glm", "https://llm.invalid/chat", "glm-4-flash", "id.secret")
        self.serializer = RequestSerializer(0, name="fake-llm")
        self.closed = False

    def queue(self, *replies: Any) -> None:
        self.replies.extend(replies)

    async def chat(self, message: str, history=None) -> LLMReply:
        self.calls.append({"message": message, "history": list(history or [])})
        reply = self.replies.pop(0) if self.replies else "ok"
        if isinstance(reply, LLMReply):
            return reply
        if not isinstance(reply, str):
            reply = safe_dumps(reply)
        return LLMReply(success=True, content=reply, action=extract_action(reply), model="glm-4-flash")

    async def close(self) -> None:
        self.closed = True
        await self.serializer.close()


class FakeXeroServer:
    """
    In-memory Xero MCP server built on the SDK's low-level Server.

    `tools` maps a tool name to an async callable taking the arguments and
    returning text; an exception raised there comes back as an isError
    result. Every transport opened is recorded with its command and env.
    """

    def __init__(self, with_tools: bool = True):
        self.with_tools = with_tools
        self.tools: Dict[str, Callable[[Dict[str, Any]], Awaitable[str]]] = {}
        self.calls: List[tuple] = []
        self.opened: List[Dict[str, Any]] = []
        self.closed = 0

    def _build(self) -> Server:
        server = Server("xero-mcp-server")
        if not self.with_tools:
            return server

        @server.list_tools()
        async def list_tools() -> List[types.Tool]:
            return [
                types.Tool(name=name, description=name.replace("-", " ").capitalize(), inputSchema={"type": "object"})
                for name in XERO_TOOLS
            ]

        @server.call_tool()
        async def call_tool(name: str, arguments: Dict[str, Any]) -> List[types.TextContent]:
            self.calls.append((name, arguments))
            handler = self.tools.get(name)
            text = await handler(arguments) if handler else f"called {name}"
            return [types.TextContent(type="text", text=text)]

        return server

    @asynccontextmanager
    async def transport(self, command: List[str], env: Dict[str, str]):
        self.opened.append({"command": command, "env": env})
        server = self._build()
        async with create_client_server_memory_streams() as (client_streams, server_streams):
            async with anyio.create_task_group() as tg:
                tg.start_soon(partial(
                    server.run,
                    server_streams[0],
                    server_streams[1],
                    server.create_initialization_options(),
                ))
                try:
                    yield client_streams
                finally:
                    self.closed += 1
                    tg.cancel_scope.cancel()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def xero_server() -> FakeXeroServer:
    return FakeXeroServer()
