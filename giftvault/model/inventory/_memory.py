# model/inventory/_memory.py
"""
Process-local inventory ledger.

Same contract as the SQL ledger. Selection and status flip for a
(listing, denomination) pool happen under that pool's asyncio.Lock; nothing
else serializes reservations across pools.
"""
from __future__ import annotations
import asyncio
import itertools
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from ...errors import (
    InsufficientInventory, InvalidStateTransition, NotFound, ValidationError,
)
from ...helpers import new_id, now_ts
from ...infra.timings import timeit
from . import require_denomination
from .types import (
    CodeInput, ListingLookup, ReservedItem, SoldItem, SOURCES, STATUSES,
    check_codes,
)

log = structlog.get_logger(__name__)

PoolKey = Tuple[str, int]


@dataclass
class _Item:
    seq: int
    id: str
    company_id: str
    listing_id: str
    denomination: int
    code: str
    pin: Optional[str]
    serial_number: Optional[str]
    source: str
    uploaded_by: str
    created_at: float
    expires_at: Optional[float] = None
    status: str = "available"
    reservation_id: Optional[str] = None
    reserved_at: Optional[float] = None
    order_id: Optional[str] = None
    sold_at: Optional[float] = None
    sold_to: Optional[str] = None

    def is_live(self, now: float) -> bool:
        return self.expires_at is None or self.expires_at > now


class InventoryLedger:
    backend = "memory"

    def __init__(self, *, listings: ListingLookup) -> None:
        self.listings = listings
        self._items: Dict[str, _Item] = {}
        # per pool, in insertion order (seq ascending)
        self._pools: Dict[PoolKey, List[_Item]] = defaultdict(list)
        self._locks: Dict[PoolKey, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._seq = itertools.count(1)

    # ----------------------------
    # Upload
    # ----------------------------
    async def add_items(
        self,
        company_id: str,
        listing_id: str,
        denomination: int,
        codes: Sequence[CodeInput],
        *,
        uploaded_by: str,
        source: str = "bulk_upload",
        expires_at: Optional[float] = None,
    ) -> List[str]:
        listing = await require_denomination(
            self.listings, listing_id, denomination
        )
        if listing.company_id != company_id:
            raise NotFound("Listing", listing_id)
        if source not in SOURCES:
            raise ValidationError(f"unknown source: {source}")
        check_codes(codes)

        ts = now_ts()
        key = (listing_id, denomination)
        ids = []
        async with self._locks[key]:
            for c in codes:
                item = _Item(
                    seq=next(self._seq),
                    id=new_id("inv"),
                    company_id=company_id,
                    listing_id=listing_id,
                    denomination=denomination,
                    code=c.code.strip(),
                    pin=c.pin,
                    serial_number=c.serial_number,
                    source=source,
                    uploaded_by=uploaded_by,
                    created_at=ts,
                    expires_at=expires_at,
                )
                self._items[item.id] = item
                self._pools[key].append(item)
                ids.append(item.id)
        log.info("inventory.uploaded", listing_id=listing_id,
                 denomination=denomination, count=len(ids))
        return ids

    # ----------------------------
    # Reserve / consume / release
    # ----------------------------
    async def reserve(self, listing_id: str, denomination: int,
                      quantity: int) -> List[ReservedItem]:
        if quantity < 1:
            raise ValidationError("quantity must be at least 1")
        await require_denomination(self.listings, listing_id, denomination)

        key = (listing_id, denomination)
        async with timeit("ledger.reserve"):
            async with self._locks[key]:
                ts = now_ts()
                candidates = sorted(
                    (it for it in self._pools[key]
                     if it.status == "available" and it.is_live(ts)),
                    key=lambda it: (it.created_at, it.seq),
                )
                if len(candidates) < quantity:
                    raise InsufficientInventory(
                        listing_id, denomination, quantity, len(candidates)
                    )
                rid = new_id("rsv")
                picked = candidates[:quantity]
                for it in picked:
                    it.status = "reserved"
                    it.reservation_id = rid
                    it.reserved_at = ts

        return [
            ReservedItem(
                id=it.id, listing_id=it.listing_id,
                denomination=it.denomination, reservation_id=rid,
                created_at=it.created_at,
            )
            for it in picked
        ]

    def _held(self, ref: ReservedItem) -> Optional[_Item]:
        it = self._items.get(ref.id)
        if (it is None or it.status != "reserved"
                or it.reservation_id != ref.reservation_id):
            return None
        return it

    async def consume(self, items: Sequence[ReservedItem], order_id: str,
                      recipient: str) -> List[SoldItem]:
        if not items:
            return []
        keys = sorted({(it.listing_id, it.denomination) for it in items})
        async with timeit("ledger.consume"):
            for key in keys:
                await self._locks[key].acquire()
            try:
                held = [self._held(ref) for ref in items]
                if any(it is None for it in held):
                    raise InvalidStateTransition(
                        "inventory items are no longer reserved"
                    )
                ts = now_ts()
                for it in held:
                    it.status = "sold"
                    it.order_id = order_id
                    it.sold_at = ts
                    it.sold_to = recipient
            finally:
                for key in keys:
                    self._locks[key].release()

        held.sort(key=lambda it: (it.created_at, it.seq))
        return [
            SoldItem(
                inventory_id=it.id, code=it.code, pin=it.pin,
                serial_number=it.serial_number,
            )
            for it in held
        ]

    async def release(self, items: Sequence[ReservedItem]) -> int:
        released = 0
        for ref in items:
            async with self._locks[(ref.listing_id, ref.denomination)]:
                it = self._held(ref)
                if it is None:
                    continue
                it.status = "available"
                it.reservation_id = None
                it.reserved_at = None
                released += 1
        if released:
            log.info("inventory.released", count=released)
        return released

    # ----------------------------
    # Reads
    # ----------------------------
    async def count_available(self, listing_id: str,
                              denomination: int) -> int:
        await require_denomination(self.listings, listing_id, denomination)
        ts = now_ts()
        return sum(
            1 for it in self._pools[(listing_id, denomination)]
            if it.status == "available" and it.is_live(ts)
        )

    async def summary(self, listing_id: str) -> Dict[str, Any]:
        listing = await self.listings.get(listing_id)
        if listing is None:
            raise NotFound("Listing", listing_id)
        out: Dict[str, Any] = {
            str(d): {st: 0 for st in STATUSES}
            for d in listing.denominations
        }
        for (lid, denom), pool in self._pools.items():
            if lid != listing_id:
                continue
            counts = out.setdefault(str(denom), {st: 0 for st in STATUSES})
            for it in pool:
                counts[it.status] += 1
        return out

    # ----------------------------
    # Maintenance
    # ----------------------------
    async def expire_sweep(self, now: Optional[float] = None) -> int:
        ts = now or now_ts()
        n = 0
        for key, pool in list(self._pools.items()):
            async with self._locks[key]:
                for it in pool:
                    if (it.status in ("available", "reserved")
                            and not it.is_live(ts)):
                        it.status = "expired"
                        n += 1
        if n:
            log.info("inventory.expired", count=n)
        return n

    async def mark_invalid(self, item_id: str) -> bool:
        it = self._items.get(item_id)
        if it is None:
            return False
        async with self._locks[(it.listing_id, it.denomination)]:
            if it.status not in ("available", "reserved"):
                return False
            it.status = "invalid"
            return True
