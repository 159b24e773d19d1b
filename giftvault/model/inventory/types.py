from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Protocol, Sequence

from ...errors import ValidationError

STATUS_AVAILABLE = "available"
STATUS_RESERVED = "reserved"
STATUS_SOLD = "sold"
STATUS_INVALID = "invalid"
STATUS_EXPIRED = "expired"

STATUSES = (
    STATUS_AVAILABLE, STATUS_RESERVED, STATUS_SOLD, STATUS_INVALID,
    STATUS_EXPIRED,
)
SOURCES = ("manual", "bulk_upload", "api")


@dataclass(frozen=True)
class CodeInput:
    code: str
    pin: Optional[str] = None
    serial_number: Optional[str] = None


@dataclass(frozen=True)
class ReservedItem:
    id: str
    listing_id: str
    denomination: int
    reservation_id: str
    created_at: float


@dataclass(frozen=True)
class SoldItem:
    inventory_id: str
    code: str
    pin: Optional[str]
    serial_number: Optional[str]

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ListingLookup(Protocol):
    async def get(self, listing_id: str) -> Any: ...


def check_codes(codes: Sequence[CodeInput]) -> None:
    if not codes:
        raise ValidationError("at least one code is required")
    seen = set()
    for c in codes:
        if not c.code or not c.code.strip():
            raise ValidationError("code must not be empty")
        if c.code in seen:
            raise ValidationError("duplicate code in upload")
        seen.add(c.code)
