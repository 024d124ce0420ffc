import os
import time
import asyncio
import uvicorn
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pydantic import BaseModel
from urllib.parse import urlencode
from dotenv import load_dotenv
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

# Load environment variables
load_dotenv()

from utils import logger, safe_exception_message
from accounting import DocumentValidationError
from actions import ActionError, execute_action
from chat_service import UPSTREAM_ERRORS, ChatService
from llm_client import LLM_COOLDOWN_MS, LLMClient, provider_from_env
from mcp_client import XeroMCPClient, tool_text
from request_queue import RequestSerializer
from session_store import InMemorySessionStore
from token_cache import CredentialExchangeFailure
from xero_auth import REFRESH_MARGIN_MS, XERO_CLIENT_ID, make_client_credentials_cache

XERO_BACKEND = os.environ.get("XERO_BACKEND", "direct").lower()
FRONTEND_URLS = [
    url.strip()
    for url in os.environ.get("FRONTEND_URLS", "http://localhost:8080,http://127.0.0.1:8080").split(",")
    if url.strip()
]
START_TIME = time.time()

# Shared state
store = InMemorySessionStore()
llm_serializer = RequestSerializer(LLM_COOLDOWN_MS / 1000, name="llm")
m2m_cache = make_client_credentials_cache(REFRESH_MARGIN_MS)
mcp_client = XeroMCPClient(m2m_cache) if XERO_BACKEND == "mcp" else None
service = ChatService(
    store,
    LLMClient(provider_from_env(), llm_serializer),
    backend_mode=XERO_BACKEND,
    mcp_client=mcp_client,
    m2m_cache=m2m_cache,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if service.mcp_client is not None:
        try:
            await service.mcp_client.start()
            logger.info("MCP backend ready")
        except Exception as e:
            logger.error(f"Failed to start MCP server, Xero features disabled: {safe_exception_message(e)}")
            service.mcp_client = None
    yield
    if service.mcp_client is not None:
        await service.mcp_client.stop()
    await service.llm.close()

# Initialize FastAPI app
app = FastAPI(title="Xero Chat Assistant", version="1.0.0", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=FRONTEND_URLS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        logger.info(f"Incoming request: {request.method} {request.url.path}")
        try:
            response = await call_next(request)
            logger.info(f"Request completed: {response.status_code}")
            return response
        except Exception as e:
            logger.error(f"Request failed: {e}")
            raise

app.add_middleware(RequestLoggingMiddleware)


# Request models
class ChatRequest(BaseModel):
    message: Optional[str] = None
    sessionId: Optional[str] = None
    session_id: Optional[str] = None
    conversationHistory: Optional[list[Dict[str, Any]]] = None

class DocumentRequest(BaseModel):
    session_id: Optional[str] = None
    contact_name: Optional[str] = None
    customer_name: Optional[str] = None
    contact_id: Optional[str] = None
    date: Optional[str] = None
    due_date: Optional[str] = None
    expiry_date: Optional[str] = None
    line_items: list[Dict[str, Any]] = []
    reference: Optional[str] = None
    currency_code: Optional[str] = None
    status: Optional[str] = None
    type: Optional[str] = None

class SessionRequest(BaseModel):
    session_id: Optional[str] = None
    sessionId: Optional[str] = None


def _session_of(*candidates: Optional[str]) -> str:
    for candidate in candidates:
        if candidate:
            return candidate
    return "default"

def _redirect_with_query(request: Request, path: str) -> RedirectResponse:
    query = urlencode(list(request.query_params.multi_items()))
    return RedirectResponse(url=f"{path}?{query}" if query else path, status_code=307)


@app.get("/")
async def root():
    return {
        "name": "Xero Chat Assistant",
        "backend": XERO_BACKEND,
        "endpoints": {
            "chat": "POST /chat",
            "history": "GET|DELETE /chat/history",
            "connect": "GET /xero/connect",
            "callback": "GET /xero/callback",
            "status": "GET /xero/status",
            "invoice": "POST /xero/invoice",
            "quotation": "POST /xero/quotation",
            "contacts": "GET /xero/contacts",
            "organisations": "GET /xero/organisations",
            "disconnect": "POST /xero/disconnect",
            "tools": "GET /xero/tools",
            "health": "GET /health",
        },
    }

# Health Check
@app.get("/health")
def health_check():
    serializer = service.llm.serializer
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.time() - START_TIME, 1),
        "backend": XERO_BACKEND,
        "llm": service.llm.provider.name,
        "mcp": service.mcp_client.running if service.mcp_client is not None else None,
        "queue": {"pending": serializer.pending, "busy": serializer.busy},
    }


# ---- Xero OAuth ----
@app.get("/xero/connect")
@app.get("/xero/auth")
def xero_connect(session_id: str = "default"):
    """Return the Xero consent URL for this session."""
    if not XERO_CLIENT_ID:
        raise HTTPException(status_code=500, detail="Xero not configured: XERO_CLIENT_ID is missing")
    authorization_url, state = service.begin_oauth(session_id)
    return {"success": True, "authorization_url": authorization_url, "state": state}

@app.get("/login")
def legacy_login(request: Request):
    return _redirect_with_query(request, "/xero/connect")

@app.get("/xero/callback")
async def xero_callback(code: str = None, state: str = None, error: str = None):
    if error:
        raise HTTPException(status_code=400, detail=f"Xero authorization error: {error}")
    if not code:
        raise HTTPException(status_code=400, detail="Missing code in callback")
    try:
        result = await service.connect_oauth(code, state)
    except CredentialExchangeFailure as e:
        logger.error(f"Xero callback failed: {e}")
        raise HTTPException(status_code=400, detail=f"Token exchange failed: {safe_exception_message(e)}")
    return {"success": True, "message": "Xero authentication successful. You can now close this window.", **result}

@app.get("/callback")
def legacy_callback(request: Request):
    return _redirect_with_query(request, "/xero/callback")

@app.get("/status")
@app.get("/xero/status")
def xero_status(session_id: str = "default"):
    return service.status(session_id)

@app.post("/disconnect")
@app.post("/xero/disconnect")
def xero_disconnect(payload: Optional[SessionRequest] = None, session_id: Optional[str] = None):
    sid = _session_of(session_id, payload.session_id if payload else None, payload.sessionId if payload else None)
    service.disconnect(sid)
    return {"success": True, "message": "Disconnected from Xero"}


# ---- Chat ----
@app.post("/chat")
async def chat(payload: ChatRequest):
    if not payload.message or not payload.message.strip():
        return JSONResponse(status_code=400, content={"success": False, "error": "Message is required"})
    session_id = _session_of(payload.sessionId, payload.session_id)
    try:
        return await service.handle(payload.message, session_id, payload.conversationHistory)
    except CredentialExchangeFailure as e:
        logger.error(f"Token validation failed for session {session_id}: {e}")
        return JSONResponse(
            status_code=401,
            content={
                "success": False,
                "error": "Xero authentication failed. Please reconnect.",
                "details": safe_exception_message(e),
            },
        )
    except Exception as e:
        logger.exception("Chat error")
        return JSONResponse(status_code=500, content={"success": False, "error": safe_exception_message(e)})

@app.get("/chat/history")
def chat_history(session_id: str = "default"):
    return {"success": True, "history": service.history(session_id)}

@app.delete("/chat/history")
def clear_chat_history(session_id: str = "default"):
    service.clear_history(session_id)
    return {"success": True, "message": "Chat history cleared"}


# ---- Direct Xero operations ----
async def _run_action(session_id: str, action: Dict[str, Any]) -> Dict[str, Any]:
    if not service.is_connected(session_id):
        raise HTTPException(status_code=401, detail="Xero account not connected. Please authenticate first.")
    try:
        backend = await service.backend_for(session_id)
        result = await execute_action(action, backend)
    except DocumentValidationError as e:
        return JSONResponse(status_code=400, content={"success": False, "error": str(e), "errors": e.errors})
    except ActionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UPSTREAM_ERRORS as e:
        logger.error(f"Xero {action.get('action')} failed: {e}")
        raise HTTPException(status_code=502, detail=safe_exception_message(e))
    return result.to_response()

@app.post("/create-invoice")
@app.post("/xero/invoice")
async def create_invoice(payload: DocumentRequest):
    document = payload.model_dump(exclude={"session_id"}, exclude_none=True)
    return await _run_action(_session_of(payload.session_id), {"action": "create_invoice", **document})

@app.post("/xero/quotation")
async def create_quotation(payload: DocumentRequest):
    document = payload.model_dump(exclude={"session_id"}, exclude_none=True)
    return await _run_action(_session_of(payload.session_id), {"action": "create_quotation", **document})

@app.get("/xero/contacts")
async def list_contacts(session_id: str = "default"):
    return await _run_action(session_id, {"action": "get_contacts"})

@app.get("/xero/organisations")
async def list_organisations(session_id: str = "default"):
    if not service.is_connected(session_id):
        raise HTTPException(status_code=401, detail="Xero account not connected. Please authenticate first.")
    try:
        if service.mcp_client is not None and service.backend_mode == "mcp":
            organisation = tool_text(await service.mcp_client.get_organisation_details())
        else:
            bearer, tenant_id = await service.access_for(session_id)
            client = service.xero_client_factory(bearer, tenant_id)
            organisation = await asyncio.to_thread(client.get_organisation)
    except UPSTREAM_ERRORS as e:
        logger.error(f"Failed to fetch organisation: {e}")
        raise HTTPException(status_code=502, detail=safe_exception_message(e))
    return {"success": True, "organisation": organisation}

@app.get("/xero/tools")
async def list_mcp_tools():
    if service.mcp_client is None:
        raise HTTPException(status_code=404, detail="MCP backend not enabled")
    try:
        tools = await service.mcp_client.list_tools()
    except UPSTREAM_ERRORS as e:
        raise HTTPException(status_code=502, detail=safe_exception_message(e))
    return {
        "success": True,
        "tools": [{"name": t.get("name"), "description": t.get("description")} for t in tools],
    }

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 3000))
    uvicorn.run(app, host="0.0.0.0", port=port)
