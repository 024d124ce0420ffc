import asyncio
import os
import secrets
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from accounting import DocumentValidationError
from actions import KNOWN_ACTIONS, ActionError, DirectBackend, MCPBackend, execute_action
from llm_client import LLMClient
from mcp_client import MCPError, XeroMCPClient
from request_queue import QueueTimeout
from session_store import SessionStore, append_history
from token_cache import BearerToken, CredentialExchangeFailure, TokenLifecycleCache
from utils import logger, safe_exception_message
from xero_auth import (
    REFRESH_MARGIN_MS,
    build_authorization_url,
    exchange_code_for_token,
    get_tenants,
    make_client_credentials_cache,
    refresh_access_token,
    select_tenant,
    session_id_from_state,
)
from xero_client import XeroAPIError, XeroClient

XERO_AUTH_TYPE = os.environ.get("XERO_AUTH_TYPE", "oauth").lower()
XERO_PREFERRED_TENANT = os.environ.get("XERO_PREFERRED_TENANT")

UPSTREAM_ERRORS = (XeroAPIError, MCPError, QueueTimeout, CredentialExchangeFailure)


class ChatService:
    """
    Glue between the chat endpoint, the LLM and Xero.

    Session records hold ``conversationHistory`` plus the Xero connection
    (``connected``, ``accessToken``, ``refreshToken``, ``expiresAt`` in epoch
    ms, ``tenantId``, ``tenantName``, ``authType``). Updates are always merged
    into the stored record so a token refresh never drops the history.
    """

    def __init__(
        self,
        store: SessionStore,
        llm: LLMClient,
        backend_mode: str = "direct",
        mcp_client: Optional[XeroMCPClient] = None,
        m2m_cache: Optional[TokenLifecycleCache] = None,
        auth_type: str = XERO_AUTH_TYPE,
        preferred_tenant: Optional[str] = XERO_PREFERRED_TENANT,
        xero_client_factory: Callable[[BearerToken, str], XeroClient] = XeroClient,
    ):
        if backend_mode not in ("direct", "mcp"):
            raise ValueError(f"Unknown Xero backend: {backend_mode}")
        self.store = store
        self.llm = llm
        self.backend_mode = backend_mode
        self.mcp_client = mcp_client
        self.auth_type = auth_type
        self.preferred_tenant = preferred_tenant
        self.m2m_cache = m2m_cache or make_client_credentials_cache(REFRESH_MARGIN_MS)
        self.xero_client_factory = xero_client_factory
        self._token_caches: Dict[str, TokenLifecycleCache] = {}

    # ---- sessions ----
    async def ensure_session(self, session_id: str) -> Dict[str, Any]:
        session = self.store.get(session_id)
        if session is not None:
            if "conversationHistory" not in session:
                session = self.store.set(session_id, {"conversationHistory": []})
            return session

        session = self.store.set(session_id, {
            "conversationHistory": [],
            "connected": False,
            "createdAt": int(time.time() * 1000),
        })
        if self.auth_type == "m2m":
            logger.info("M2M authentication configured - auto-connecting session %s", session_id)
            await self.connect_m2m(session_id)
            session = self.store.get(session_id)
        return session

    async def connect_m2m(self, session_id: str) -> bool:
        try:
            bearer = await self.m2m_cache.get_bearer()
            tenants = await asyncio.to_thread(get_tenants, bearer.value)
        except CredentialExchangeFailure as exc:
            logger.error("M2M auto-connection failed: %s", exc)
            return False

        tenant = select_tenant(tenants, self.preferred_tenant)
        if not tenant:
            logger.error("M2M auto-connection found no connected tenants")
            return False
        self.store.set(session_id, {
            "connected": True,
            "authType": "m2m",
            "accessToken": bearer.value,
            "expiresAt": bearer.expires_at_ms,
            "tenantId": tenant.get("tenantId"),
            "tenantName": tenant.get("tenantName"),
        })
        logger.info("M2M auto-connection successful (tenant=%s)", tenant.get("tenantName"))
        return True

    def begin_oauth(self, session_id: str) -> Tuple[str, str]:
        """Issue a consent URL and remember its state so the callback can be checked."""
        authorization_url, state = build_authorization_url(session_id)
        self.store.set(session_id, {"oauthState": state})
        return authorization_url, state

    def _session_for_state(self, state: Optional[str]) -> str:
        if not state:
            return "default"
        session_id = session_id_from_state(state)
        issued = (self.store.get(session_id) or {}).get("oauthState") if session_id else None
        if not issued or not secrets.compare_digest(issued, state):
            logger.warning("Rejected OAuth callback with unknown state")
            raise CredentialExchangeFailure("OAuth state is invalid or expired; start the Xero connection again")
        return session_id

    async def connect_oauth(self, code: str, state: Optional[str] = None) -> Dict[str, Any]:
        session_id = self._session_for_state(state)
        token = await asyncio.to_thread(exchange_code_for_token, code)
        tenants = await asyncio.to_thread(get_tenants, token.value)
        tenant = select_tenant(tenants, self.preferred_tenant)
        if not tenant:
            raise CredentialExchangeFailure("No Xero organisations are connected to this app")

        self.store.set(session_id, {
            "connected": True,
            "authType": "oauth",
            "accessToken": token.value,
            "refreshToken": token.refresh_token,
            "expiresAt": token.expires_at_ms,
            "tenantId": tenant.get("tenantId"),
            "tenantName": tenant.get("tenantName"),
            "oauthState": None,
        })
        self._token_caches.pop(session_id, None)
        logger.info("Xero connected for session %s (tenant=%s)", session_id, tenant.get("tenantName"))
        return {
            "session_id": session_id,
            "tenantId": tenant.get("tenantId"),
            "tenantName": tenant.get("tenantName"),
            "tenants": [t.get("tenantName") for t in tenants],
        }

    def is_connected(self, session_id: str) -> bool:
        if self.backend_mode == "mcp":
            return self.mcp_client is not None
        session = self.store.get(session_id) or {}
        return bool(session.get("connected") and session.get("accessToken"))

    def status(self, session_id: str) -> Dict[str, Any]:
        session = self.store.get(session_id)
        if not session or not session.get("connected"):
            return {"connected": False, "message": "Xero account not connected. Please authenticate first."}
        body = {
            "connected": True,
            "tenantName": session.get("tenantName"),
            "tenantId": session.get("tenantId"),
            "authType": session.get("authType"),
        }
        cache = self.m2m_cache if session.get("authType") == "m2m" else self._token_caches.get(session_id)
        if cache is not None:
            body["token"] = cache.info()
        return body

    def disconnect(self, session_id: str) -> bool:
        self._token_caches.pop(session_id, None)
        return self.store.delete(session_id)

    def history(self, session_id: str) -> List[Dict[str, str]]:
        session = self.store.get(session_id)
        return list(session.get("conversationHistory") or []) if session else []

    def clear_history(self, session_id: str) -> None:
        if session_id in self.store:
            self.store.set(session_id, {"conversationHistory": []})

    # ---- tokens ----
    def _session_token_cache(self, session_id: str, session: Dict[str, Any]) -> TokenLifecycleCache:
        cache = self._token_caches.get(session_id)
        if cache is not None:
            return cache

        async def exchange() -> BearerToken:
            current = self.store.get(session_id) or {}
            token = await asyncio.to_thread(refresh_access_token, current.get("refreshToken"))
            self.store.set(session_id, {
                "accessToken": token.value,
                "refreshToken": token.refresh_token,
                "expiresAt": token.expires_at_ms,
            })
            logger.info("Token refreshed for session %s", session_id)
            return token

        cache = TokenLifecycleCache(
            exchange,
            safety_margin_ms=REFRESH_MARGIN_MS,
            initial=BearerToken(
                value=session["accessToken"],
                expires_at_ms=int(session.get("expiresAt") or 0),
                refresh_token=session.get("refreshToken"),
            ),
            name=f"xero-session-{session_id}",
        )
        self._token_caches[session_id] = cache
        return cache

    async def access_for(self, session_id: str) -> Optional[Tuple[BearerToken, str]]:
        """Valid bearer token and tenant id for a connected session, refreshing if needed."""
        session = self.store.get(session_id)
        if not session or not session.get("connected") or not session.get("accessToken"):
            return None

        if session.get("authType") == "m2m":
            bearer = await self.m2m_cache.get_bearer()
            if bearer.value != session.get("accessToken"):
                self.store.set(session_id, {"accessToken": bearer.value, "expiresAt": bearer.expires_at_ms})
        else:
            bearer = await self._session_token_cache(session_id, session).get_bearer()
        return bearer, session.get("tenantId")

    async def backend_for(self, session_id: str):
        if self.backend_mode == "mcp":
            if self.mcp_client is None:
                raise ActionError("MCP Server not available. Please check server configuration.")
            return MCPBackend(self.mcp_client)
        access = await self.access_for(session_id)
        if access is None:
            raise ActionError("Xero account not connected. Please authenticate first.")
        bearer, tenant_id = access
        return DirectBackend(self.xero_client_factory(bearer, tenant_id))

    # ---- chat ----
    async def handle(
        self,
        message: str,
        session_id: str = "default",
        conversation_history: Optional[List[Dict[str, str]]] = None,
    ) -> Dict[str, Any]:
        if not message or not str(message).strip():
            raise ValueError("Message is required")

        session = await self.ensure_session(session_id)
        connected = self.is_connected(session_id)

        # Refresh before talking to the LLM so a dead connection is reported up front
        if connected and self.backend_mode == "direct" and session.get("refreshToken"):
            await self.access_for(session_id)

        history = conversation_history if conversation_history is not None else session.get("conversationHistory") or []
        reply = await self.llm.chat(message, history)
        if not reply.success:
            return {"success": False, "message": reply.content, "error": reply.error}

        append_history(self.store, session_id, message, reply.content)

        action = reply.action
        if action is None:
            return {"success": True, "type": "text", "message": reply.content, "xero_connected": connected}

        name = action.get("action")
        if name not in KNOWN_ACTIONS:
            return {"success": False, "type": "unknown_action", "message": f"Unknown action: {name}", "data": action}

        if name != "request_info" and not connected:
            return {
                "success": True,
                "type": "action_data",
                "message": f"Here is the {name} data ready to be executed in Xero.",
                "data": action,
                "structuredAction": action,
                "xero_connected": False,
                "note": "Please connect Xero account first",
            }

        try:
            backend = await self.backend_for(session_id) if name != "request_info" else None
            result = await execute_action(action, backend)
        except ActionError as exc:
            return {
                "success": True,
                "type": "text",
                "message": str(exc),
                "structuredAction": action,
                "xero_connected": connected,
            }
        except DocumentValidationError as exc:
            return {
                "success": False,
                "type": "validation_error",
                "message": str(exc),
                "errors": exc.errors,
                "structuredAction": action,
                "xero_connected": connected,
            }
        except UPSTREAM_ERRORS as exc:
            logger.error("Xero %s failed: %s", name, exc)
            return {
                "success": False,
                "type": "xero_error",
                "message": reply.content,
                "data": action,
                "structuredAction": action,
                "xero_error": safe_exception_message(exc) or "Operation failed",
                "details": getattr(exc, "details", None),
            }

        body = result.to_response()
        body["structuredAction"] = action
        body["xero_connected"] = connected
        return body
