# model/inventory/__init__.py
import os
from typing import Optional

from ...errors import NotFound
from ...infra.sql import Gated
from .types import (
    CodeInput, ReservedItem, SoldItem, ListingLookup,
    STATUS_AVAILABLE, STATUS_RESERVED, STATUS_SOLD, STATUS_INVALID,
    STATUS_EXPIRED,
)

BACKEND = os.getenv("INVENTORY_BACKEND", "sql").lower()  # 'sql' | 'memory'


async def require_denomination(listings: ListingLookup, listing_id: str,
                               denomination: int):
    listing = await listings.get(listing_id)
    if listing is None:
        raise NotFound("Listing", listing_id)
    if denomination not in listing.denominations:
        raise NotFound("Denomination", str(denomination))
    return listing


# Factory keeps callers backend-agnostic:
def new_ledger(*, listings: ListingLookup, backend: Optional[str] = None,
               SessionAsync=None, gated: Optional[Gated] = None,
               dialect: str = "sqlite"):
    backend = (backend or BACKEND).lower()
    if backend == "memory":
        from ._memory import InventoryLedger as _Memory
        return _Memory(listings=listings)
    if SessionAsync is None or gated is None:
        raise RuntimeError(
            "InventoryLedger(sql) requires SessionAsync and gated"
        )
    from ._sql import InventoryLedger as _Sql
    return _Sql(SessionAsync=SessionAsync, gated=gated, listings=listings,
                dialect=dialect)


__all__ = [
    "new_ledger", "require_denomination", "BACKEND",
    "CodeInput", "ReservedItem", "SoldItem",
    "STATUS_AVAILABLE", "STATUS_RESERVED", "STATUS_SOLD", "STATUS_INVALID",
    "STATUS_EXPIRED",
]
