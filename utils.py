import json
import logging
import os
import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

# Per-call ceiling applied by the glue layer to outstanding external calls
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "30"))

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("xero_chat")

def _json_default(o):
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    if isinstance(o, Decimal):
        return float(o)
    if isinstance(o, UUID):
        return str(o)
    if isinstance(o, Enum):
        # Prefer value if it's simple, otherwise name
        return o.value if isinstance(o.value, (str, int, float, bool, type(None))) else o.name
    to_dict = getattr(o, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")

def safe_dumps(obj) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=False)

def to_jsonable(obj) -> Any:
    """Round-trip through safe_dumps so SDK models and dates become plain JSON types."""
    if obj is None:
        return None
    return json.loads(safe_dumps(obj))

def safe_exception_message(exc: Exception) -> str:
    """Return a safe string representation of an exception without triggering nested errors."""
    try:
        return str(exc)
    except Exception:
        try:
            return exc.__class__.__name__
        except Exception:
            return "UnknownException"

def _as_float(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            return float(value)
        except Exception:
            return None
    if isinstance(value, str):
        cleaned = re.sub(r"[^0-9.\-]", "", value)
        if not cleaned or cleaned in {"-", ".", "-.", ".-"}:
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None

def mask_token(token: str | None, keep: int = 8) -> str:
    if not token:
        return "<missing>"
    return f"{token[:keep]}..."
