import re
import time
import uuid
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

KOBO_PER_NAIRA = 100
KOBO = Decimal("0.01")

# "₦5,000", "NGN 5000", "5000 naira", "5,000.50"
AMOUNT_NOISE = re.compile(r"(₦|ngn|naira|n(?=\d)|,|\s)", re.IGNORECASE)

def parse_amount(value: Any) -> Optional[Decimal]:
    """Coerces a tool argument into a naira Decimal rounded to whole kobo; None when it isn't a number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        cleaned = AMOUNT_NOISE.sub("", str(value))
        if not cleaned:
            return None
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            return None
    if not amount.is_finite():
        return None
    # the prompt and the debit both read this value
    try:
        return amount.quantize(KOBO, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None

def to_minor_units(amount: Decimal) -> int:
    """Naira to whole kobo."""
    return int((amount * KOBO_PER_NAIRA).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def from_minor_units(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / KOBO_PER_NAIRA).quantize(KOBO)

def format_naira(amount: Decimal) -> str:
    if amount == amount.to_integral_value():
        return f"₦{amount:,.0f}"
    return f"₦{amount:,.2f}"

def generate_reference(prefix: str, user_id: str) -> str:
    """Timestamp plus user suffix plus a random tail, so no two attempts ever share a reference."""
    millis = int(time.time() * 1000)
    suffix = re.sub(r"[^A-Za-z0-9]", "", str(user_id))[-4:]
    return f"{prefix}{millis}{suffix}{uuid.uuid4().hex[:6]}"
