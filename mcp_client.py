import asyncio
import os
import re
import shlex
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Tuple

import anyio
from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from request_queue import QueueTimeout
from token_cache import TokenLifecycleCache
from utils import REQUEST_TIMEOUT_SECONDS, logger, mask_token, safe_exception_message

XERO_MCP_COMMAND = os.environ.get("XERO_MCP_COMMAND", "npx -y @xeroapi/xero-mcp-server@latest")

CLIENT_INFO = types.Implementation(name="xero-chat", version="1.0.0")

# Code the SDK puts on pending requests when the server's stream ends
CONNECTION_CLOSED = -32000

# How long a stopping session gets before its task is cancelled
SHUTDOWN_TIMEOUT_SECONDS = 10

_CONTACT_ID_RE = re.compile(r"ID: ([a-f0-9-]+)")

_TRANSPORT_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)

# (command, env) -> async context yielding the (read, write) message streams
Transport = Callable[[List[str], Dict[str, str]], AsyncContextManager[Tuple[Any, Any]]]


class MCPError(Exception):
    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


def _from_mcp_error(exc: McpError) -> MCPError:
    error = exc.error
    return MCPError(error.message or "MCP error", code=error.code, data=error.data)


@asynccontextmanager
async def stdio_transport(command: List[str], env: Dict[str, str]):
    """Spawn `command` and yield the SDK's message streams over its stdin/stdout."""
    params = StdioServerParameters(command=command[0], args=command[1:], env=env)
    logger.info("Starting MCP server: %s", " ".join(command))
    async with stdio_client(params) as (read_stream, write_stream):
        yield read_stream, write_stream
    logger.info("MCP server process stopped")


def tool_text(result: Optional[Dict[str, Any]]) -> str:
    """Join the text parts of a tools/call result."""
    content = (result or {}).get("content") or []
    return "\n".join(item.get("text", "") for item in content if isinstance(item, dict) and item.get("type") == "text")

def find_contact_id(result: Optional[Dict[str, Any]], name: str) -> Optional[str]:
    """Scan a list-contacts result for the entry naming `name` and return its ContactID."""
    for item in (result or {}).get("content") or []:
        if not isinstance(item, dict) or item.get("type") != "text":
            continue
        text = item.get("text") or ""
        if name and name in text:
            match = _CONTACT_ID_RE.search(text)
            if match:
                return match.group(1)
    return None


class XeroMCPClient:
    """
    Runs the Xero MCP server as a child process authenticated with a bearer
    token from `token_cache`. The process is restarted whenever the cache
    hands out a different token than the one it was started with.

    The SDK session lives in a background task: its transport and cancel
    scopes must be entered and exited by the same task, while tool calls
    come from request handlers.
    """

    def __init__(
        self,
        token_cache: TokenLifecycleCache,
        command: Optional[str] = None,
        transport: Optional[Transport] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.token_cache = token_cache
        self.command = shlex.split(command or XERO_MCP_COMMAND)
        self.timeout = timeout
        self._transport = transport or stdio_transport
        self._session: Optional[ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None
        self._bearer: Optional[str] = None
        self._lock = asyncio.Lock()
        self.server_info: Optional[Dict[str, Any]] = None

    @property
    def running(self) -> bool:
        return self._session is not None and self._task is not None and not self._task.done()

    async def start(self) -> None:
        async with self._lock:
            await self._ensure_started()

    async def _serve(self, env: Dict[str, str], ready: asyncio.Future, stop: asyncio.Event) -> None:
        try:
            async with self._transport(self.command, env) as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream, client_info=CLIENT_INFO) as session:
                    result = await session.initialize()
                    ready.set_result((session, result))
                    await stop.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.error(f"MCP session ended: {safe_exception_message(e) or type(e).__name__}")
        finally:
            if not ready.done():
                ready.set_exception(MCPError("MCP server exited before initializing"))

    async def _ensure_started(self) -> ClientSession:
        bearer = await self.token_cache.get_token()
        if self.running and bearer == self._bearer:
            return self._session
        if self._task is not None:
            logger.info("Restarting MCP server (bearer token changed or process exited)")
            await self._shutdown()

        ready = asyncio.get_running_loop().create_future()
        stop = asyncio.Event()
        task = asyncio.create_task(self._serve({"XERO_CLIENT_BEARER_TOKEN": bearer}, ready, stop))
        try:
            session, result = await asyncio.wait_for(asyncio.shield(ready), self.timeout)
        except asyncio.TimeoutError:
            ready.cancel()
            await self._finish(task, stop)
            raise QueueTimeout("MCP server did not initialize in time")
        except McpError as e:
            await self._finish(task, stop)
            raise _from_mcp_error(e) from e
        except MCPError:
            await self._finish(task, stop)
            raise
        except Exception as e:
            await self._finish(task, stop)
            raise MCPError(f"MCP server failed to start: {safe_exception_message(e) or type(e).__name__}") from e

        self._session, self._task, self._stop, self._bearer = session, task, stop, bearer
        self.server_info = result.serverInfo.model_dump(mode="json", exclude_none=True)
        logger.info("MCP server initialized (%s) with token %s", self.server_info, mask_token(bearer))
        return session

    @staticmethod
    async def _finish(task: asyncio.Task, stop: asyncio.Event) -> None:
        stop.set()
        try:
            await asyncio.wait_for(task, SHUTDOWN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("MCP server did not stop in time; cancelled")

    async def _shutdown(self) -> None:
        task, stop = self._task, self._stop
        self._session = self._task = self._stop = None
        self._bearer = None
        if task is not None:
            await self._finish(task, stop)

    async def stop(self) -> None:
        async with self._lock:
            await self._shutdown()

    async def _discard(self, session: ClientSession) -> None:
        async with self._lock:
            if self._session is session:
                await self._shutdown()

    async def _client(self) -> ClientSession:
        async with self._lock:
            return await self._ensure_started()

    async def _request(self, label: str, call: Callable[[ClientSession], Any]) -> Any:
        session = await self._client()
        try:
            return await asyncio.wait_for(call(session), self.timeout)
        except asyncio.TimeoutError:
            logger.error("MCP request %s timed out", label)
            raise QueueTimeout(f"MCP request timeout: {label}")
        except McpError as e:
            error = _from_mcp_error(e)
            logger.error("MCP %s returned error %s: %s", label, error.code, error)
            if error.code == CONNECTION_CLOSED and str(error).startswith("Connection closed"):
                await self._discard(session)
            raise error from e
        except _TRANSPORT_ERRORS as e:
            logger.error("MCP connection lost during %s", label)
            await self._discard(session)
            raise MCPError(f"MCP connection lost: {type(e).__name__}") from e

    async def list_tools(self) -> List[Dict[str, Any]]:
        result = await self._request("tools/list", lambda session: session.list_tools())
        return [tool.model_dump(mode="json", exclude_none=True) for tool in result.tools]

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        logger.info("Calling MCP tool: %s", name)
        result = await self._request(name, lambda session: session.call_tool(name, arguments or {}))
        payload = result.model_dump(mode="json", by_alias=True, exclude_none=True)
        if result.isError:
            raise MCPError(tool_text(payload) or f"Tool {name} failed", data=payload)
        return payload

    # ---- Xero tool wrappers ----
    async def list_contacts(self, page: Optional[int] = None):
        return await self.call_tool("list-contacts", {"page": page} if page else {})

    async def create_contact(self, data: Dict[str, Any]):
        return await self.call_tool("create-contact", data)

    async def update_contact(self, contact_id: str, data: Dict[str, Any]):
        return await self.call_tool("update-contact", {"contactId": contact_id, **data})

    async def list_invoices(self, page: int = 1, **filters):
        return await self.call_tool("list-invoices", {"page": page, **filters})

    async def create_invoice(self, data: Dict[str, Any]):
        return await self.call_tool("create-invoice", data)

    async def update_invoice(self, invoice_id: str, data: Dict[str, Any]):
        return await self.call_tool("update-invoice", {"invoiceId": invoice_id, **data})

    async def list_quotes(self, page: int = 1, **filters):
        return await self.call_tool("list-quotes", {"page": page, **filters})

    async def create_quote(self, data: Dict[str, Any]):
        return await self.call_tool("create-quote", data)

    async def list_accounts(self):
        return await self.call_tool("list-accounts")

    async def list_items(self, page: int = 1):
        return await self.call_tool("list-items", {"page": page})

    async def list_payments(self, page: int = 1, **filters):
        return await self.call_tool("list-payments", {"page": page, **filters})

    async def create_payment(self, data: Dict[str, Any]):
        return await self.call_tool("create-payment", data)

    async def get_organisation_details(self):
        return await self.call_tool("list-organisation-details")
