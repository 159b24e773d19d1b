import time
import re
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from .errors import ValidationError

_ALPHABET = string.ascii_letters + string.digits


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id(prefix: str, size: int = 16) -> str:
    return f"{prefix}_" + "".join(
        secrets.choice(_ALPHABET) for _ in range(size)
    )


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def to_cents(value) -> int:
    """Decimal amount ("10", 10.5, Decimal) -> positive integer cents."""
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"invalid amount: {value!r}")
    cents = d * 100
    if cents != cents.to_integral_value():
        raise ValidationError(f"amount has sub-cent precision: {value!r}")
    if cents <= 0:
        raise ValidationError(f"amount must be positive: {value!r}")
    return int(cents)


def from_cents(cents: int) -> str:
    return str((Decimal(cents) / 100).quantize(Decimal("0.01")))


def pct_of(cents: int, pct) -> int:
    # half-up on the cent
    d = Decimal(cents) * Decimal(str(pct)) / Decimal(100)
    return int(d.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
