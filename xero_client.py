import json
import os
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from xero_python.accounting import (
    AccountingApi,
    Account,
    Accounts,
    Contact,
    Contacts,
    Invoice,
    Invoices,
    Item,
    Items,
    LineItem,
    Payment,
    PaymentDelete,
    Phone,
    Purchase,
    Quote,
    Quotes,
)
from xero_python.api_client import ApiClient
from xero_python.api_client.configuration import Configuration
from xero_python.api_client.oauth2 import OAuth2Token

from accounting import DocumentValidationError
from token_cache import BearerToken, epoch_ms
from utils import _as_float, logger, safe_exception_message, to_jsonable

XERO_CLIENT_ID = os.environ.get("XERO_CLIENT_ID")
XERO_CLIENT_SECRET = os.environ.get("XERO_CLIENT_SECRET")

DEFAULT_CURRENCY = "MYR"
DEFAULT_TAX_TYPE = "NONE"
DEFAULT_ACCOUNT_CODE = "200"
DEFAULT_EXPIRES_IN = 1800


class XeroAPIError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.status = status
        self.details = details


def build_api_client(token: BearerToken) -> ApiClient:
    token_dict = token.as_oauth2_dict()
    cfg = Configuration(
        oauth2_token=OAuth2Token(client_id=XERO_CLIENT_ID, client_secret=XERO_CLIENT_SECRET),
        debug=False,
    )
    client = ApiClient(configuration=cfg)

    @client.oauth2_token_getter
    def _getter():
        return token_dict

    @client.oauth2_token_saver
    def _saver(new_token):
        # Refreshes go through TokenLifecycleCache, not the SDK
        token_dict.update(new_token or {})

    try:
        client.set_oauth2_token(token_dict)
    except TypeError:
        client.set_oauth2_token({
            "access_token": token_dict["access_token"],
            "token_type": token_dict["token_type"],
            "expires_in": token_dict["expires_in"],
            "scope": token_dict["scope"],
        })
    return client


# ---- Argument helpers ----
def _get_arg(args: Dict[str, Any], *names, default=None):
    for name in names:
        if name in args:
            return args[name]
        # also try snake/camel variants
        alt = name.replace("_", "")
        for k in args.keys():
            if k.replace("_", "").lower() == alt.lower():
                return args[k]
    return default

def _parse_iso_date(value: Any):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value)).date()
    except Exception:
        return None

def _xero_where_date_field(field: str, date_from: Any = None, date_to: Any = None) -> str:
    parts = []
    if date_from:
        d = _parse_iso_date(date_from)
        if d:
            parts.append(f"{field} >= DateTime({d.year},{d.month},{d.day})")
    if date_to:
        d = _parse_iso_date(date_to)
        if d:
            parts.append(f"{field} <= DateTime({d.year},{d.month},{d.day})")
    return " && ".join(parts)

def _join_where(*clauses: str) -> str | None:
    parts = [c for c in clauses if c]
    return " && ".join(parts) if parts else None

def _escape(value: str) -> str:
    return str(value).replace('"', '\\"')

def _compact(kwargs: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v not in (None, "", [])}


def _problem_message(body: Any, fallback: str) -> str:
    """Flatten Xero's error bodies (validation Elements, Problem, Message) into one line."""
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except (TypeError, ValueError):
            return fallback
    if not isinstance(body, dict):
        return fallback

    messages: List[str] = []
    for element in body.get("Elements") or []:
        for err in element.get("ValidationErrors") or []:
            if err.get("Message"):
                messages.append(err["Message"])
    problem = body.get("Problem")
    if isinstance(problem, list):
        messages.extend(p.get("Message") for p in problem if isinstance(p, dict) and p.get("Message"))
    elif isinstance(problem, dict) and problem.get("Message"):
        messages.append(problem["Message"])
    if not messages:
        for key in ("Detail", "detail", "Message", "title"):
            if body.get(key):
                messages.append(str(body[key]))
                break
    return "; ".join(messages) if messages else fallback


def _number(value: Any, field: str, default: Optional[float] = None) -> Optional[float]:
    """Coerce an amount such as "RM 1,200.50"; anything unparseable is a validation error."""
    if value is None or value == "":
        return default
    number = _as_float(value)
    if number is None:
        raise DocumentValidationError([f"{field} must be a number, got {value!r}"])
    return number


def _line_items(items: List[Dict[str, Any]]) -> List[LineItem]:
    result = []
    for index, item in enumerate(items or [], start=1):
        result.append(
            LineItem(
                description=item.get("description"),
                quantity=_number(item.get("quantity"), f"Line {index} quantity", 1.0),
                unit_amount=_number(item.get("unit_amount"), f"Line {index} unit_amount", 0.0),
                tax_type=item.get("tax_type") or DEFAULT_TAX_TYPE,
                account_code=str(item.get("account_code") or DEFAULT_ACCOUNT_CODE),
                discount_rate=item.get("discount_rate"),
                item_code=item.get("item_code"),
            )
        )
    return result


class XeroClient:
    """Accounting API calls scoped to one access token and tenant."""

    def __init__(self, token: BearerToken | str, tenant_id: str, api: Optional[AccountingApi] = None):
        if not tenant_id:
            raise XeroAPIError("Xero tenant id is missing; connect Xero first")
        if isinstance(token, str):
            token = BearerToken(value=token, expires_at_ms=epoch_ms() + DEFAULT_EXPIRES_IN * 1000)
        self.tenant_id = tenant_id
        self.api = api or AccountingApi(build_api_client(token))

    def _call(self, label: str, fn, *args, **kwargs):
        try:
            return fn(self.tenant_id, *args, **kwargs)
        except Exception as exc:
            status = getattr(exc, "status", None)
            body = getattr(exc, "body", None)
            message = _problem_message(body, f"Failed to {label}: {safe_exception_message(exc)}")
            logger.error("Xero %s failed (status=%s): %s", label, status, message)
            raise XeroAPIError(message, status=status, details=body)

    # ---- GET ----
    def get_invoices(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filters = filters or {}
        status = _get_arg(filters, "status", "statuses")
        contact_id = _get_arg(filters, "contact_id")
        kwargs = _compact({
            "where": _join_where(
                _get_arg(filters, "where"),
                f'Type=="{_escape(_get_arg(filters, "type"))}"' if _get_arg(filters, "type") else "",
                _xero_where_date_field("Date", _get_arg(filters, "date_from", "since"), _get_arg(filters, "date_to")),
            ),
            "statuses": [status] if isinstance(status, str) else status,
            "contact_i_ds": [contact_id] if contact_id else None,
            "order": _get_arg(filters, "order"),
            "page": _get_arg(filters, "page"),
        })
        resp = self._call("get invoices", self.api.get_invoices, **kwargs)
        return to_jsonable(getattr(resp, "invoices", None) or [])

    def get_invoice(self, invoice_id: str) -> Dict[str, Any]:
        resp = self._call("get invoice", self.api.get_invoice, invoice_id)
        invoices = getattr(resp, "invoices", None) or []
        if not invoices:
            raise XeroAPIError(f"Invoice {invoice_id} not found", status=404)
        return to_jsonable(invoices[0])

    def get_contacts(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filters = filters or {}
        name = _get_arg(filters, "name")
        kwargs = _compact({
            "where": _join_where(
                _get_arg(filters, "where"),
                f'Name=="{_escape(name)}"' if name else "",
            ),
            "search_term": _get_arg(filters, "search_term", "search"),
            "order": _get_arg(filters, "order"),
            "page": _get_arg(filters, "page"),
        })
        resp = self._call("get contacts", self.api.get_contacts, **kwargs)
        return to_jsonable(getattr(resp, "contacts", None) or [])

    def get_contact(self, contact_id: str) -> Dict[str, Any]:
        resp = self._call("get contact", self.api.get_contact, contact_id)
        contacts = getattr(resp, "contacts", None) or []
        if not contacts:
            raise XeroAPIError(f"Contact {contact_id} not found", status=404)
        return to_jsonable(contacts[0])

    def get_accounts(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filters = filters or {}
        acc_type = _get_arg(filters, "type")
        kwargs = _compact({
            "where": _join_where(
                _get_arg(filters, "where"),
                f'Type=="{_escape(acc_type)}"' if acc_type else "",
            ),
            "order": _get_arg(filters, "order"),
        })
        resp = self._call("get accounts", self.api.get_accounts, **kwargs)
        return to_jsonable(getattr(resp, "accounts", None) or [])

    def get_items(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filters = filters or {}
        kwargs = _compact({"where": _get_arg(filters, "where"), "order": _get_arg(filters, "order")})
        resp = self._call("get items", self.api.get_items, **kwargs)
        return to_jsonable(getattr(resp, "items", None) or [])

    def get_payments(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filters = filters or {}
        invoice_id = _get_arg(filters, "invoice_id")
        kwargs = _compact({
            "where": _join_where(
                _get_arg(filters, "where"),
                f'Invoice.InvoiceID==Guid("{_escape(invoice_id)}")' if invoice_id else "",
                _xero_where_date_field("Date", _get_arg(filters, "date_from"), _get_arg(filters, "date_to")),
            ),
            "order": _get_arg(filters, "order"),
            "page": _get_arg(filters, "page"),
        })
        resp = self._call("get payments", self.api.get_payments, **kwargs)
        return to_jsonable(getattr(resp, "payments", None) or [])

    def get_quotes(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filters = filters or {}
        kwargs = _compact({
            "status": _get_arg(filters, "status"),
            "contact_id": _get_arg(filters, "contact_id"),
            "date_from": _parse_iso_date(_get_arg(filters, "date_from")) if _get_arg(filters, "date_from") else None,
            "date_to": _parse_iso_date(_get_arg(filters, "date_to")) if _get_arg(filters, "date_to") else None,
            "page": _get_arg(filters, "page"),
        })
        resp = self._call("get quotes", self.api.get_quotes, **kwargs)
        return to_jsonable(getattr(resp, "quotes", None) or [])

    def get_organisation(self) -> Dict[str, Any]:
        resp = self._call("get organisation", self.api.get_organisations)
        organisations = getattr(resp, "organisations", None) or []
        return to_jsonable(organisations[0]) if organisations else {}

    # ---- POST (create) ----
    def create_invoice(self, data: Dict[str, Any]) -> Dict[str, Any]:
        issued = _parse_iso_date(data.get("date")) or date.today()
        invoice = Invoice(
            type=data.get("type") or "ACCREC",
            contact=self._contact_ref(data),
            date=issued,
            due_date=_parse_iso_date(data.get("due_date")) or issued,
            line_items=_line_items(data.get("line_items") or []),
            status=data.get("status") or "DRAFT",
            reference=data.get("reference") or "",
            currency_code=data.get("currency_code") or DEFAULT_CURRENCY,
        )
        if data.get("line_amount_types"):
            invoice.line_amount_types = data["line_amount_types"]
        resp = self._call("create invoice", self.api.create_invoices, Invoices(invoices=[invoice]))
        created = to_jsonable((getattr(resp, "invoices", None) or [None])[0]) or {}
        logger.info("Created Xero invoice %s", created.get("InvoiceID") or created.get("invoice_id"))
        return created

    def create_quote(self, data: Dict[str, Any]) -> Dict[str, Any]:
        issued = _parse_iso_date(data.get("date")) or date.today()
        quote = Quote(
            contact=self._contact_ref(data),
            date=issued,
            expiry_date=_parse_iso_date(data.get("expiry_date") or data.get("due_date")) or issued,
            line_items=_line_items(data.get("line_items") or []),
            status=data.get("status") or "DRAFT",
            reference=data.get("reference") or data.get("quote_number") or "",
            currency_code=data.get("currency_code") or DEFAULT_CURRENCY,
            line_amount_types=data.get("line_amount_types") or "Exclusive",
        )
        resp = self._call("create quote", self.api.create_quotes, Quotes(quotes=[quote]))
        created = to_jsonable((getattr(resp, "quotes", None) or [None])[0]) or {}
        logger.info("Created Xero quote %s", created.get("QuoteID") or created.get("quote_id"))
        return created

    def create_contact(self, data: Dict[str, Any]) -> Dict[str, Any]:
        contact = self._contact_model(data)
        resp = self._call("create contact", self.api.create_contacts, Contacts(contacts=[contact]))
        return to_jsonable((getattr(resp, "contacts", None) or [None])[0]) or {}

    def create_account(self, data: Dict[str, Any]) -> Dict[str, Any]:
        account = Account(
            code=str(data.get("code")) if data.get("code") is not None else None,
            name=data.get("name"),
            type=data.get("type") or "REVENUE",
            description=data.get("description"),
            tax_type=data.get("tax_type"),
        )
        resp = self._call("create account", self.api.create_account, account)
        return to_jsonable((getattr(resp, "accounts", None) or [None])[0]) or {}

    def create_item(self, data: Dict[str, Any]) -> Dict[str, Any]:
        item = self._item_model(data, code=str(data.get("name") or "")[:30])
        resp = self._call("create item", self.api.create_items, Items(items=[item]))
        return to_jsonable((getattr(resp, "items", None) or [None])[0]) or {}

    def _existing_item_code(self, item_id: str) -> Optional[str]:
        resp = self._call("get item", self.api.get_item, item_id)
        items = getattr(resp, "items", None) or []
        return getattr(items[0], "code", None) if items else None

    def create_payment(self, data: Dict[str, Any]) -> Dict[str, Any]:
        payment = Payment(
            invoice=Invoice(invoice_id=data.get("invoice_id")),
            account=Account(code=str(data.get("account_code") or DEFAULT_ACCOUNT_CODE)),
            date=_parse_iso_date(data.get("date")) or date.today(),
            amount=_number(data.get("amount"), "Payment amount", 0.0),
            reference=data.get("reference") or "",
            currency_rate=_number(data.get("currency_rate"), "Payment currency_rate", 1.0),
        )
        resp = self._call("create payment", self.api.create_payment, payment)
        return to_jsonable((getattr(resp, "payments", None) or [None])[0]) or {}

    def get_or_create_contact(self, name: str) -> Dict[str, Any]:
        existing = self.get_contacts({"name": name})
        if existing:
            return {"contact": existing[0], "created": False}
        return {"contact": self.create_contact({"name": name}), "created": True}

    # ---- PUT (update) ----
    def update_invoice(self, invoice_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        fields = _compact({
            "invoice_id": invoice_id,
            "type": data.get("type"),
            "contact": self._contact_ref(data) if (data.get("contact_name") or data.get("contact_id")) else None,
            "date": _parse_iso_date(data.get("date")) if data.get("date") else None,
            "due_date": _parse_iso_date(data.get("due_date")) if data.get("due_date") else None,
            "line_items": _line_items(data["line_items"]) if data.get("line_items") else None,
            "status": data.get("status"),
            "reference": data.get("reference"),
            "currency_code": data.get("currency_code"),
        })
        resp = self._call("update invoice", self.api.update_invoice, invoice_id, Invoices(invoices=[Invoice(**fields)]))
        return to_jsonable((getattr(resp, "invoices", None) or [None])[0]) or {}

    def update_contact(self, contact_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        contact = self._contact_model(data, contact_id=contact_id)
        resp = self._call("update contact", self.api.update_contact, contact_id, Contacts(contacts=[contact]))
        return to_jsonable((getattr(resp, "contacts", None) or [None])[0]) or {}

    def update_account(self, account_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        account = Account(**_compact({
            "account_id": account_id,
            "code": str(data["code"]) if data.get("code") is not None else None,
            "name": data.get("name"),
            "description": data.get("description"),
            "tax_type": data.get("tax_type"),
            "status": data.get("status"),
        }))
        resp = self._call("update account", self.api.update_account, account_id, Accounts(accounts=[account]))
        return to_jsonable((getattr(resp, "accounts", None) or [None])[0]) or {}

    def update_item(self, item_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        code = data.get("code") or self._existing_item_code(item_id)
        item = self._item_model(data, item_id=item_id, code=code)
        resp = self._call("update item", self.api.update_item, item_id, Items(items=[item]))
        return to_jsonable((getattr(resp, "items", None) or [None])[0]) or {}

    # ---- DELETE ----
    def delete_invoice(self, invoice_id: str) -> Dict[str, Any]:
        # Xero has no hard delete; draft/submitted invoices move to DELETED
        return self.update_invoice(invoice_id, {"status": "DELETED"})

    def delete_contact(self, contact_id: str) -> Dict[str, Any]:
        # Contacts can only be archived
        contact = Contact(contact_id=contact_id, contact_status="ARCHIVED")
        resp = self._call("archive contact", self.api.update_contact, contact_id, Contacts(contacts=[contact]))
        return to_jsonable((getattr(resp, "contacts", None) or [None])[0]) or {}

    def delete_account(self, account_id: str) -> Dict[str, Any]:
        resp = self._call("delete account", self.api.delete_account, account_id)
        return to_jsonable((getattr(resp, "accounts", None) or [None])[0]) or {}

    def delete_item(self, item_id: str) -> Dict[str, Any]:
        self._call("delete item", self.api.delete_item, item_id)
        return {"ItemID": item_id, "deleted": True}

    def delete_payment(self, payment_id: str) -> Dict[str, Any]:
        resp = self._call("delete payment", self.api.delete_payment, payment_id, PaymentDelete(status="DELETED"))
        return to_jsonable((getattr(resp, "payments", None) or [None])[0]) or {}

    # ---- model builders ----
    @staticmethod
    def _contact_ref(data: Dict[str, Any]) -> Contact:
        contact_id = data.get("contact_id")
        if contact_id:
            return Contact(contact_id=contact_id)
        return Contact(
            name=data.get("contact_name") or data.get("customer_name") or "Customer",
            contact_number=data.get("contact_code") or data.get("customer_code") or None,
        )

    @staticmethod
    def _contact_model(data: Dict[str, Any], contact_id: Optional[str] = None) -> Contact:
        phone = data.get("phone")
        fields = _compact({
            "contact_id": contact_id,
            "name": data.get("name"),
            "first_name": data.get("first_name"),
            "last_name": data.get("last_name"),
            "email_address": data.get("email"),
            "phones": [Phone(phone_type="DEFAULT", phone_number=str(phone))] if phone else None,
            "is_customer": data.get("is_customer"),
            "is_supplier": data.get("is_supplier"),
        })
        return Contact(**fields)

    @staticmethod
    def _item_model(data: Dict[str, Any], item_id: Optional[str] = None, code: Optional[str] = None) -> Item:
        # Xero requires Code on every item payload, updates included
        sales_price = data.get("unit_price", data.get("sale_price"))
        purchase_price = data.get("purchase_price")
        fields = _compact({
            "item_id": item_id,
            "code": str(data.get("code") or code or ""),
            "name": data.get("name"),
            "description": data.get("description"),
            "sales_details": Purchase(
                unit_price=_number(sales_price, "Item unit_price"),
                account_code=str(data.get("account_code") or DEFAULT_ACCOUNT_CODE),
                tax_type=data.get("tax_type") or DEFAULT_TAX_TYPE,
            ) if sales_price is not None else None,
            "purchase_details": Purchase(unit_price=_number(purchase_price, "Item purchase_price")) if purchase_price is not None else None,
        })
        return Item(**fields)


def invoice_url(invoice_id: str) -> str:
    return f"https://go.xero.com/AccountsReceivable/View.aspx?InvoiceID={invoice_id}"

def quote_url(quote_id: str) -> str:
    return f"https://go.xero.com/Quotes/View.aspx?QuoteID={quote_id}"
