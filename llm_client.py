import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from jose import jwt

from request_queue import RequestSerializer
from token_cache import epoch_ms
from utils import REQUEST_TIMEOUT_SECONDS, logger, safe_exception_message

# Environment variables
GLM_API_KEY = os.environ.get("GLM_API_KEY")
GLM_API_URL = os.environ.get("GLM_API_URL", "https://open.bigmodel.cn/api/paas/v4/chat/completions")
GLM_MODEL = os.environ.get("GLM_MODEL", "glm-4-flash")
GROQ_API_KEY = os.environ.get("GROQ_API_KEY")
GROQ_API_URL = os.environ.get("GROQ_API_URL", "https://api.groq.com/openai/v1/chat/completions")
GROQ_MODEL = os.environ.get("GROQ_MODEL", "llama-3.3-70b-versatile")
LLM_PROVIDER = os.environ.get("LLM_PROVIDER")
LLM_COOLDOWN_MS = int(os.environ.get("LLM_COOLDOWN_MS", "500"))

TEMPERATURE = 0.7
MAX_TOKENS = 2000
TOP_P = 0.9

SYSTEM_PROMPT = """You are an intelligent Xero accounting assistant. You can:

1. Answer accounting questions conversationally
2. Create invoices, quotations, contacts, accounts, items and payments in Xero
3. Retrieve Xero data (invoices, quotations, contacts, accounts, items, payments) and update or delete it

RESPONSE FORMAT:
- For questions: respond in plain text, helpful and conversational
- For Xero operations: output ONLY one valid JSON object (no markdown, no code blocks)

Only output JSON when the user explicitly asks to create, retrieve, update or delete Xero data.

ACTIONS (the "action" field selects the operation):
- get_invoices, get_quotes, get_contacts, get_accounts, get_items, get_payments
  {"action": "get_invoices", "filters": {"status": "AUTHORISED", "date_from": "2026-01-01"}}
- create_invoice
  {"action": "create_invoice", "type": "ACCREC", "contact_name": "Customer Sdn Bhd",
   "date": "2026-01-30", "due_date": "2026-02-28",
   "line_items": [{"description": "Consulting", "quantity": 1, "unit_amount": 1000,
                   "tax_type": "NONE", "account_code": "200"}],
   "currency_code": "MYR", "reference": "Optional reference"}
- create_quotation: same fields as create_invoice, with "expiry_date" instead of "due_date"
- create_contact   {"action": "create_contact", "name": "...", "email": "...", "phone": "..."}
- create_account   {"action": "create_account", "code": "201", "name": "...", "type": "REVENUE"}
- create_item      {"action": "create_item", "code": "...", "name": "...", "unit_price": 100}
- create_payment   {"action": "create_payment", "invoice_id": "...", "account_code": "090",
                    "amount": 100, "date": "2026-01-30"}
- update_invoice   {"action": "update_invoice", "invoice_id": "...", "invoice_data": {...}}
- update_contact   {"action": "update_contact", "contact_id": "...", "contact_data": {...}}
- update_account   {"action": "update_account", "account_id": "...", "account_data": {...}}
- update_item      {"action": "update_item", "item_id": "...", "item_data": {...}}
- delete_invoice, delete_contact, delete_item, delete_payment
  {"action": "delete_invoice", "invoice_id": "..."}

MISSING DATA:
If required information is missing, output:
{"action": "request_info", "document_type": "invoice", "missing_fields": ["contact_name", "line_items[0].quantity"],
 "message": "Please provide the following information to create the invoice"}

DEFAULT VALUES:
- currency_code: "MYR", tax_type: "NONE", account_code: "200", status: "DRAFT", type: "ACCREC"

TAX TYPES (Malaysia): NONE, SST 6%, SST 10%

Remember: be conversational and helpful unless the user explicitly requests a Xero operation.
"""

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


class LLMError(Exception):
    pass


@dataclass
class LLMProvider:
    name: str
    url: str
    model: str
    api_key: Optional[str]

    def auth_header(self, now_ms: Optional[int] = None) -> str:
        if not self.api_key:
            raise LLMError(f"{self.name.upper()}_API_KEY not found in environment variables")
        if self.name == "glm":
            return f"Bearer {generate_glm_token(self.api_key, now_ms=now_ms)}"
        return f"Bearer {self.api_key}"

    def payload(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        body = {
            "model": self.model,
            "messages": messages,
            "temperature": TEMPERATURE,
            "max_tokens": MAX_TOKENS,
        }
        if self.name == "glm":
            body["top_p"] = TOP_P
        return body


def provider_from_env(name: Optional[str] = None) -> LLMProvider:
    name = (name or LLM_PROVIDER or ("glm" if GLM_API_KEY else "groq")).lower()
    if name == "glm":
        return LLMProvider("glm", GLM_API_URL, GLM_MODEL, GLM_API_KEY)
    if name == "groq":
        return LLMProvider("groq", GROQ_API_URL, GROQ_MODEL, GROQ_API_KEY)
    raise ValueError(f"Unknown LLM provider: {name}")


def generate_glm_token(api_key: str, now_ms: Optional[int] = None, ttl_ms: int = 3600 * 1000) -> str:
    """Sign a short-lived GLM API token from an ``id.secret`` API key."""
    key_id, _, secret = (api_key or "").partition(".")
    if not key_id or not secret:
        raise LLMError("Invalid API key format")
    now_ms = epoch_ms() if now_ms is None else now_ms
    claims = {"api_key": key_id, "exp": now_ms + ttl_ms, "timestamp": now_ms}
    return jwt.encode(claims, secret, algorithm="HS256", headers={"sign_type": "SIGN"})


def extract_action(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the JSON action directive in `content`, or None for plain text."""
    if not content:
        return None
    cleaned = _FENCE_RE.sub("", content).strip()
    try:
        parsed = json.loads(cleaned)
    except ValueError:
        return None
    if isinstance(parsed, dict) and isinstance(parsed.get("action"), str) and parsed["action"]:
        return parsed
    return None


@dataclass
class LLMReply:
    success: bool
    content: str
    action: Optional[Dict[str, Any]] = None
    usage: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None
    error: Optional[str] = None


class LLMClient:
    """Chat completions through one provider, one request at a time."""

    def __init__(
        self,
        provider: LLMProvider,
        serializer: Optional[RequestSerializer] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.provider = provider
        self.serializer = serializer or RequestSerializer(LLM_COOLDOWN_MS / 1000, name=provider.name)
        self._http = http_client
        self.timeout = timeout

    async def chat(self, message: str, history: Optional[List[Dict[str, str]]] = None) -> LLMReply:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages.extend(history or [])
        messages.append({"role": "user", "content": message})

        try:
            data = await self.serializer.submit(lambda: self._complete(messages), timeout=self.timeout)
            content = data["choices"][0]["message"]["content"] or ""
        except Exception as exc:
            error = safe_exception_message(exc)
            logger.error("%s API error: %s", self.provider.name.upper(), error)
            return LLMReply(
                success=False,
                content=f"Sorry, I encountered an error: {error}. Please try again.",
                error=error,
            )

        return LLMReply(
            success=True,
            content=content,
            action=extract_action(content),
            usage=data.get("usage") or {},
            model=data.get("model") or self.provider.model,
        )

    async def _complete(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "Authorization": self.provider.auth_header()}
        payload = self.provider.payload(messages)
        if self._http is not None:
            response = await self._http.post(self.provider.url, json=payload, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.provider.url, json=payload, headers=headers)

        if response.status_code >= 400:
            try:
                detail = (response.json().get("error") or {}).get("message")
            except (ValueError, AttributeError):
                detail = None
            raise LLMError(detail or f"HTTP {response.status_code}: {response.reason_phrase}")
        return response.json()

    async def close(self) -> None:
        await self.serializer.close()
        if self._http is not None:
            await self._http.aclose()
