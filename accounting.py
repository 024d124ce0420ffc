"""
Invoice/quotation arithmetic and validation done locally before anything is
sent to Xero.

Tax types follow Xero's Malaysian naming: ``NONE``, ``SST 6%``, ``SST 10%``.
Line amount types:

* ``Exclusive`` - tax is added on top of the unit amounts
* ``Inclusive`` - tax is already included in the unit amounts
"""
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List

from utils import _as_float

CURRENCY_SYMBOL = "RM"

_TAX_TYPES = {
    "SST": {6: "SST 6%", 10: "SST 10%"},
    "GST": {6: "GST 6%"},
}


class DocumentValidationError(ValueError):
    def __init__(self, errors: List[str]):
        super().__init__(f"Document validation failed: {', '.join(errors)}")
        self.errors = errors


def round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

def _number(value: Any) -> float:
    number = _as_float(value)
    return number if number is not None else 0.0

def _has_tax(item: Dict[str, Any]) -> bool:
    tax_type = item.get("tax_type")
    return bool(tax_type) and tax_type != "NONE"


def extract_tax_rate(tax_type: str) -> float:
    """'SST 6%' -> 6.0, 'OUTPUT6%' -> 6.0, 'NONE' -> 0.0"""
    match = re.search(r"(\d+(\.\d+)?)", tax_type or "")
    return float(match.group(1)) if match else 0.0

def get_xero_tax_type(rate: float = 0, kind: str = "SST") -> str:
    if not rate:
        return "NONE"
    rate_key = int(rate) if float(rate).is_integer() else rate
    return _TAX_TYPES.get(kind, {}).get(rate_key) or f"{kind} {rate_key}%"


def calculate_line_items(line_items: List[Dict[str, Any]], line_amount_type: str = "Exclusive") -> List[Dict[str, Any]]:
    calculated = []
    for item in line_items:
        quantity = _number(item.get("quantity"))
        unit_amount = _number(item.get("unit_amount"))
        discount_rate = _number(item.get("discount_rate"))

        line_amount = quantity * unit_amount
        discount_amount = 0.0
        if discount_rate > 0:
            discount_amount = line_amount * (discount_rate / 100)
            line_amount -= discount_amount

        tax_rate = 0.0
        tax_amount = 0.0
        if _has_tax(item):
            tax_rate = extract_tax_rate(item["tax_type"])
            if line_amount_type == "Exclusive":
                tax_amount = line_amount * (tax_rate / 100)
            else:
                tax_amount = line_amount * (tax_rate / (100 + tax_rate))

        total = line_amount + tax_amount if line_amount_type == "Exclusive" else line_amount

        calculated.append({
            **item,
            "line_amount": line_amount,
            "tax_amount": tax_amount,
            "tax_rate": tax_rate,
            "discount_amount": discount_amount,
            "total": total,
        })
    return calculated

def calculate_totals(line_items: List[Dict[str, Any]]) -> Dict[str, Any]:
    subtotal = sum(item.get("line_amount") or 0 for item in line_items)
    total_tax = sum(item.get("tax_amount") or 0 for item in line_items)
    total_discount = sum(item.get("discount_amount") or 0 for item in line_items)

    # Taxed lines were calculated exclusive; untaxed documents total the subtotal
    total = subtotal + total_tax if any(_has_tax(item) for item in line_items) else subtotal

    return {
        "subtotal": round2(subtotal),
        "total_tax": round2(total_tax),
        "total_discount": round2(total_discount),
        "total": round2(total),
        "line_count": len(line_items),
    }


def format_currency(amount: Any, with_symbol: bool = True) -> str:
    formatted = f"{_number(amount):,.2f}"
    return f"{CURRENCY_SYMBOL} {formatted}" if with_symbol else formatted

def parse_currency(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    cleaned = re.sub(r"RM", "", str(value or ""), flags=re.IGNORECASE).replace(",", "").strip()
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def validate_line_item(item: Dict[str, Any]) -> List[str]:
    errors = []
    if not str(item.get("description") or "").strip():
        errors.append("Description is required")
    quantity = _as_float(item.get("quantity"))
    if quantity is None or quantity <= 0:
        errors.append("Quantity must be greater than 0")
    unit_amount = _as_float(item.get("unit_amount"))
    if unit_amount is None or unit_amount < 0:
        errors.append("Unit amount must be 0 or greater")
    if not item.get("account_code"):
        errors.append("Account code is required")
    return errors

def validate_document(data: Dict[str, Any]) -> List[str]:
    errors = []
    contact_name = data.get("contact_name") or data.get("customer_name") or data.get("contact_id")
    if not str(contact_name or "").strip():
        errors.append("Contact name is required")
    if not data.get("date"):
        errors.append("Date is required")

    line_items = data.get("line_items")
    if not isinstance(line_items, list) or not line_items:
        errors.append("At least one line item is required")
    else:
        for index, item in enumerate(line_items, start=1):
            item_errors = validate_line_item(item if isinstance(item, dict) else {})
            if item_errors:
                errors.append(f"Line item {index}: {', '.join(item_errors)}")
    return errors


def format_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        raise ValueError(f"Invalid date: {value!r}")

def add_days(value: Any, days: int) -> str:
    start = date.fromisoformat(format_date(value))
    return (start + timedelta(days=days)).isoformat()


def generate_document_summary(data: Dict[str, Any], doc_type: str = "Invoice") -> str:
    lines = [
        f"{doc_type} Summary",
        "=" * 35,
        f"Contact: {data.get('contact_name') or data.get('customer_name')}",
        f"Date: {data.get('date')}",
    ]
    if data.get("due_date"):
        lines.append(f"Due Date: {data['due_date']}")
    if data.get("expiry_date"):
        lines.append(f"Expiry Date: {data['expiry_date']}")
    lines.append("")
    lines.append("Line Items:")
    for index, item in enumerate(data.get("line_items") or [], start=1):
        line_total = _number(item.get("quantity")) * _number(item.get("unit_amount"))
        lines.append(f"  {index}. {item.get('description')}")
        lines.append(
            f"     Qty: {item.get('quantity')} x {format_currency(item.get('unit_amount'))} = {format_currency(line_total)}"
        )
        if _has_tax(item):
            lines.append(f"     Tax: {item['tax_type']}")

    if data.get("subtotal") is not None:
        lines.append("")
        lines.append(f"Subtotal: {format_currency(data['subtotal'])}")
        if (data.get("total_tax") or 0) > 0:
            lines.append(f"Tax: {format_currency(data['total_tax'])}")
        if (data.get("total_discount") or 0) > 0:
            lines.append(f"Discount: -{format_currency(data['total_discount'])}")
        lines.append("-" * 35)
        lines.append(f"TOTAL: {format_currency(data['total'])}")
    return "\n".join(lines)


def prepare_document(document: Dict[str, Any], line_amount_type: str = "Exclusive") -> Dict[str, Any]:
    """Validate, then attach per-line and document totals."""
    errors = validate_document(document)
    if errors:
        raise DocumentValidationError(errors)
    calculated = calculate_line_items(document["line_items"], line_amount_type)
    return {
        **document,
        "line_items": calculated,
        **calculate_totals(calculated),
        "line_amount_types": line_amount_type,
    }
