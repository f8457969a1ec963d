import math
import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Tuple
from urllib.parse import quote


# ----------------------------
# Helpers
# ----------------------------
def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def ticket_number_for(order_id: str) -> str:
    return f"TKT-{order_id[:8].upper()}"


def qr_code_url_for(ticket_number: str) -> str:
    return (
        "https://api.qrserver.com/v1/create-qr-code/?size=200x200&data="
        + quote(ticket_number, safe="")
    )


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def is_valid_phone(phone: Optional[str]) -> bool:
    """`+` followed by 7-15 digits; spaces, dashes and parens are ignored."""
    if not phone:
        return False
    compact = re.sub(r"[\s\-()]", "", phone)
    return re.match(r"^\+\d{7,15}$", compact) is not None


def split_name(full_name: str) -> Tuple[str, str]:
    parts = (full_name or "").split()
    first = parts[0] if parts else ""
    return first, " ".join(parts[1:])


def to_number(value: Any) -> float:
    # NUMERIC comes back as Decimal from asyncpg, as float/int from sqlite
    if value is None:
        return 0.0
    if isinstance(value, Decimal):
        return float(value)
    return float(value)


def as_int(value: Any) -> Optional[int]:
    """Strict int coercion for JSON payload fields; bools are rejected."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def as_number(value: Any) -> Optional[float]:
    """Finite number or None; nan and inf are rejected like any bad input."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def bundles_available(capacity: int, tickets_sold: int,
                      bundle_quantity: int) -> int:
    """How many whole bundles still fit into the remaining capacity."""
    remaining = max(0, int(capacity) - int(tickets_sold or 0))
    return remaining // max(1, int(bundle_quantity))
