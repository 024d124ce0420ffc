import asyncio
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from accounting import generate_document_summary, prepare_document
from mcp_client import XeroMCPClient, find_contact_id, tool_text
from utils import logger
from xero_client import (
    DEFAULT_ACCOUNT_CODE,
    DEFAULT_CURRENCY,
    DEFAULT_TAX_TYPE,
    XeroClient,
    invoice_url,
    quote_url,
)

# resource -> plural used in get_* action names and messages
RESOURCES = {
    "invoice": "invoices",
    "contact": "contacts",
    "account": "accounts",
    "item": "items",
    "payment": "payments",
}

# quotes are read-only here; they are created through create_quotation
READABLE = {**RESOURCES, "quote": "quotes"}

GET_ACTIONS = {f"get_{plural}": resource for resource, plural in READABLE.items()}
CREATE_ACTIONS = {f"create_{resource}": resource for resource in RESOURCES}
CREATE_ACTIONS["create_quotation"] = "quotation"
UPDATE_ACTIONS = {f"update_{r}": r for r in ("invoice", "contact", "account", "item")}
DELETE_ACTIONS = {f"delete_{r}": r for r in ("invoice", "contact", "item", "payment")}

KNOWN_ACTIONS = frozenset(
    list(GET_ACTIONS) + list(CREATE_ACTIONS) + list(UPDATE_ACTIONS) + list(DELETE_ACTIONS) + ["request_info"]
)

# field that must be present for each create_* action, with the prompt shown when missing
_REQUIRED_FOR_CREATE = {
    "contact": ("name", "Please provide a contact name (and optionally an email address)."),
    "account": ("name", "Please provide the account name and code."),
    "item": ("name", "Please provide the item name (and optionally a code and unit price)."),
    "payment": ("invoice_id", "Please tell me which invoice the payment is for."),
}


class ActionError(Exception):
    """An LLM-produced action that cannot be executed as given."""


@dataclass
class ActionResult:
    type: str
    message: str
    data: Any = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_response(self) -> Dict[str, Any]:
        body = {"success": True, "type": self.type, "message": self.message}
        if self.data is not None:
            body["data"] = self.data
        body.update(self.extra)
        return body


# ---- Backends ----
class DirectBackend:
    """Runs actions against the Xero REST API through the SDK client."""

    name = "direct"

    def __init__(self, client: XeroClient):
        self.client = client

    async def get(self, resource: str, filters: Dict[str, Any]):
        return await asyncio.to_thread(getattr(self.client, f"get_{READABLE[resource]}"), filters)

    async def create(self, resource: str, data: Dict[str, Any]):
        method = "create_quote" if resource == "quotation" else f"create_{resource}"
        return await asyncio.to_thread(getattr(self.client, method), data)

    async def update(self, resource: str, record_id: str, data: Dict[str, Any]):
        return await asyncio.to_thread(getattr(self.client, f"update_{resource}"), record_id, data)

    async def delete(self, resource: str, record_id: str):
        return await asyncio.to_thread(getattr(self.client, f"delete_{resource}"), record_id)


def _mcp_line_items(line_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "description": item.get("description"),
            "quantity": item.get("quantity"),
            "unitAmount": item.get("unit_amount"),
            "accountCode": item.get("account_code") or DEFAULT_ACCOUNT_CODE,
            "taxType": item.get("tax_type") or DEFAULT_TAX_TYPE,
        }
        for item in line_items
    ]

def _drop_empty(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v not in (None, "", [])}


class MCPBackend:
    """Runs the subset of actions the Xero MCP server exposes as tools."""

    name = "mcp"

    def __init__(self, client: XeroMCPClient):
        self.client = client

    async def get(self, resource: str, filters: Dict[str, Any]):
        if resource == "invoice":
            result = await self.client.list_invoices()
        elif resource == "contact":
            result = await self.client.list_contacts()
        elif resource == "account":
            result = await self.client.list_accounts()
        elif resource == "item":
            result = await self.client.list_items()
        elif resource == "quote":
            result = await self.client.list_quotes()
        else:
            result = await self.client.list_payments()
        return tool_text(result)

    async def _contact_id(self, data: Dict[str, Any]) -> str:
        if data.get("contact_id"):
            return data["contact_id"]
        name = data.get("contact_name") or data.get("customer_name")
        contact_id = find_contact_id(await self.client.list_contacts(), name)
        if not contact_id:
            raise ActionError(
                f'Contact "{name}" not found. Please create the contact first or use an exact contact name.'
            )
        return contact_id

    async def create(self, resource: str, data: Dict[str, Any]):
        if resource == "contact":
            result = await self.client.create_contact(
                _drop_empty({"name": data.get("name"), "email": data.get("email"), "phone": data.get("phone")})
            )
        elif resource in ("invoice", "quotation"):
            payload = _drop_empty({
                "contactId": await self._contact_id(data),
                "lineItems": _mcp_line_items(data.get("line_items") or []),
                "reference": data.get("reference"),
            })
            if resource == "invoice":
                payload.update(_drop_empty({"type": data.get("type"), "date": data.get("date"), "dueDate": data.get("due_date")}))
                result = await self.client.create_invoice(payload)
            else:
                payload.update(_drop_empty({"quoteNumber": data.get("quote_number"), "title": data.get("title")}))
                result = await self.client.create_quote(payload)
        elif resource == "payment":
            result = await self.client.create_payment(_drop_empty({
                "invoiceId": data.get("invoice_id"),
                "accountId": data.get("account_id"),
                "amount": data.get("amount"),
                "date": data.get("date"),
                "reference": data.get("reference"),
            }))
        else:
            raise ActionError(f"Creating {resource}s is not supported by the MCP backend")
        return tool_text(result)

    async def update(self, resource: str, record_id: str, data: Dict[str, Any]):
        if resource == "invoice":
            payload = _drop_empty({
                "lineItems": _mcp_line_items(data["line_items"]) if data.get("line_items") else None,
                "reference": data.get("reference"),
                "date": data.get("date"),
                "dueDate": data.get("due_date"),
            })
            result = await self.client.update_invoice(record_id, payload)
        elif resource == "contact":
            result = await self.client.update_contact(
                record_id, _drop_empty({"name": data.get("name"), "email": data.get("email"), "phone": data.get("phone")})
            )
        else:
            raise ActionError(f"Updating {resource}s is not supported by the MCP backend")
        return tool_text(result)

    async def delete(self, resource: str, record_id: str):
        raise ActionError(f"Deleting {resource}s is not supported by the MCP backend")


# ---- Dispatch ----
def _with_document_defaults(action: Dict[str, Any]) -> Dict[str, Any]:
    document = {k: v for k, v in action.items() if k != "action"}
    document.setdefault("type", "ACCREC")
    document.setdefault("currency_code", DEFAULT_CURRENCY)
    document["date"] = document.get("date") or date.today().isoformat()
    document["line_items"] = [
        {**item, "account_code": item.get("account_code") or DEFAULT_ACCOUNT_CODE, "tax_type": item.get("tax_type") or DEFAULT_TAX_TYPE}
        for item in (document.get("line_items") or document.get("items") or [])
        if isinstance(item, dict)
    ]
    return document

def _record_id(record: Any, resource: str) -> Optional[str]:
    if not isinstance(record, dict):
        return None
    key = "quote" if resource == "quotation" else resource
    return record.get(f"{key}_id") or record.get(f"{key.capitalize()}ID")


async def _create_document(resource: str, action: Dict[str, Any], backend) -> ActionResult:
    label = "Invoice" if resource == "invoice" else "Quotation"
    document = _with_document_defaults(action)
    if not (document.get("contact_name") or document.get("customer_name") or document.get("contact_id")):
        raise ActionError(f"Please tell me which customer the {label.lower()} is for.")
    if not document["line_items"]:
        raise ActionError(f"Please provide the items for the {label.lower()}: description, quantity and price.")

    prepared = prepare_document(document)
    created = await backend.create(resource, prepared)

    record_id = _record_id(created, resource)
    extra: Dict[str, Any] = {
        "totals": {k: prepared[k] for k in ("subtotal", "total_tax", "total_discount", "total")},
        "summary": generate_document_summary(prepared, doc_type=label),
    }
    if record_id:
        key = "invoice_url" if resource == "invoice" else "quotation_url"
        extra[key] = invoice_url(record_id) if resource == "invoice" else quote_url(record_id)
    logger.info("%s created via %s backend (id=%s)", label, backend.name, record_id)
    return ActionResult(f"{resource}_created", f"{label} created successfully!", data=created, extra=extra)


async def execute_action(action: Dict[str, Any], backend) -> ActionResult:
    """Run one LLM action directive against `backend`."""
    name = action.get("action")
    if name not in KNOWN_ACTIONS:
        raise ActionError(f"Unknown action: {name}")

    if name == "request_info":
        return ActionResult(
            "request_info",
            action.get("message") or "Please provide more information.",
            data={"document_type": action.get("document_type"), "missing_fields": action.get("missing_fields") or []},
        )

    if name in GET_ACTIONS:
        resource = GET_ACTIONS[name]
        plural = READABLE[resource]
        records = await backend.get(resource, action.get("filters") or {})
        if isinstance(records, list):
            return ActionResult("data_retrieved", f"Found {len(records)} {plural}", data=records, extra={"count": len(records)})
        return ActionResult("data_retrieved", f"Here are your {plural}", data=records)

    if name in CREATE_ACTIONS:
        resource = CREATE_ACTIONS[name]
        if resource in ("invoice", "quotation"):
            return await _create_document(resource, action, backend)
        required, prompt = _REQUIRED_FOR_CREATE[resource]
        if not action.get(required):
            raise ActionError(prompt)
        data = {k: v for k, v in action.items() if k != "action"}
        created = await backend.create(resource, data)
        if resource == "payment":
            message = f"Payment of RM{action.get('amount')} recorded successfully!"
        else:
            message = f'{resource.capitalize()} "{action.get("name")}" created successfully!'
        return ActionResult(f"{resource}_created", message, data=created)

    if name in UPDATE_ACTIONS:
        resource = UPDATE_ACTIONS[name]
        record_id = action.get(f"{resource}_id")
        if not record_id:
            raise ActionError(f"Please tell me which {resource} to update ({resource}_id is missing).")
        data = action.get(f"{resource}_data")
        if not isinstance(data, dict):
            data = {k: v for k, v in action.items() if k not in ("action", f"{resource}_id")}
        updated = await backend.update(resource, record_id, data)
        return ActionResult(f"{resource}_updated", f"{resource.capitalize()} updated successfully!", data=updated)

    resource = DELETE_ACTIONS[name]
    record_id = action.get(f"{resource}_id")
    if not record_id:
        raise ActionError(f"Please tell me which {resource} to delete ({resource}_id is missing).")
    deleted = await backend.delete(resource, record_id)
    return ActionResult(f"{resource}_deleted", f"{resource.capitalize()} deleted successfully!", data=deleted)
