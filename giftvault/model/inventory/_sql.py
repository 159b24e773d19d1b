# model/inventory/_sql.py
"""
SQL inventory ledger.

Reservation is a single conditional UPDATE over the FIFO-ordered candidate
set, so two concurrent reservations can never flip the same row:
- the inner SELECT picks the oldest available, unexpired items
- the outer WHERE re-checks status='available' at write time
- PostgreSQL adds FOR UPDATE SKIP LOCKED so waiters skip rows in flight
If fewer rows flipped than requested, the transaction is rolled back and
nothing stays reserved.

Secrets (code, pin) are only read through the ORM so the EncryptedString
column type decrypts them.
"""
from __future__ import annotations
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import bindparam, select, text

from ...errors import (
    InsufficientInventory, InvalidStateTransition, NotFound, ValidationError,
)
from ...helpers import new_id, now_ts
from ...infra.sql import Gated
from ...infra.timings import timeit
from ..db import InventoryItem
from . import require_denomination
from .types import (
    CodeInput, ListingLookup, ReservedItem, SoldItem, SOURCES, check_codes,
    STATUSES,
)

log = structlog.get_logger(__name__)


SQL_COUNT_AVAILABLE = r"""
SELECT COUNT(*) FROM inventory_items
WHERE listing_id=:l AND denomination=:d AND status='available'
  AND (expires_at IS NULL OR expires_at > :now)
"""

SQL_RESERVE = r"""
UPDATE inventory_items
SET status='reserved', reservation_id=:rid, reserved_at=:now
WHERE seq IN (
    SELECT seq FROM inventory_items
    WHERE listing_id=:l AND denomination=:d AND status='available'
      AND (expires_at IS NULL OR expires_at > :now)
    ORDER BY created_at, seq
    LIMIT :q
    {lock}
)
AND status='available'
"""

SQL_RESERVED_BY = r"""
SELECT id, listing_id, denomination, reservation_id, created_at
FROM inventory_items
WHERE reservation_id=:rid AND status='reserved'
ORDER BY created_at, seq
"""

SQL_CONSUME = text(r"""
UPDATE inventory_items
SET status='sold', order_id=:o, sold_at=:now, sold_to=:to
WHERE id IN :ids AND status='reserved' AND reservation_id=:rid
""").bindparams(bindparam("ids", expanding=True))

SQL_RELEASE = text(r"""
UPDATE inventory_items
SET status='available', reservation_id=NULL, reserved_at=NULL
WHERE id IN :ids AND status='reserved' AND reservation_id=:rid
""").bindparams(bindparam("ids", expanding=True))

SQL_EXPIRE = r"""
UPDATE inventory_items
SET status='expired'
WHERE status IN ('available','reserved')
  AND expires_at IS NOT NULL AND expires_at <= :now
"""

SQL_MARK_INVALID = r"""
UPDATE inventory_items
SET status='invalid'
WHERE id=:id AND status IN ('available','reserved')
"""

SQL_SUMMARY = r"""
SELECT denomination, status, COUNT(*) FROM inventory_items
WHERE listing_id=:l
GROUP BY denomination, status
"""


def _by_reservation(items: Sequence[ReservedItem]) -> Dict[str, List[str]]:
    groups: Dict[str, List[str]] = defaultdict(list)
    for it in items:
        groups[it.reservation_id].append(it.id)
    return groups


class InventoryLedger:
    backend = "sql"

    def __init__(self, *, SessionAsync, gated: Gated,
                 listings: ListingLookup, dialect: str = "sqlite") -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated
        self.listings = listings
        self.dialect = dialect
        lock = "FOR UPDATE SKIP LOCKED" if dialect == "postgresql" else ""
        self._sql_reserve = text(SQL_RESERVE.format(lock=lock))

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
        rows = [
            InventoryItem(
                id=new_id("inv"),
                company_id=company_id,
                listing_id=listing_id,
                denomination=denomination,
                code=c.code.strip(),
                pin=c.pin,
                serial_number=c.serial_number,
                status="available",
                source=source,
                expires_at=expires_at,
                uploaded_by=uploaded_by,
                created_at=ts,
            )
            for c in codes
        ]
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    s.add_all(rows)
        log.info("inventory.uploaded", listing_id=listing_id,
                 denomination=denomination, count=len(rows))
        return [r.id for r in rows]

    # ----------------------------
    # Reserve / consume / release
    # ----------------------------
    async def reserve(self, listing_id: str, denomination: int,
                      quantity: int) -> List[ReservedItem]:
        if quantity < 1:
            raise ValidationError("quantity must be at least 1")
        await require_denomination(self.listings, listing_id, denomination)

        rid = new_id("rsv")
        ts = now_ts()
        params = {"l": listing_id, "d": denomination, "now": ts}
        async with timeit("ledger.reserve"):
            async with self.gated():
                async with self.SessionAsync() as s:
                    async with s.begin():
                        available = (await s.execute(
                            text(SQL_COUNT_AVAILABLE), params
                        )).scalar_one()
                        if available < quantity:
                            raise InsufficientInventory(
                                listing_id, denomination, quantity,
                                int(available),
                            )
                        res = await s.execute(
                            self._sql_reserve,
                            {**params, "rid": rid, "q": quantity},
                        )
                        if res.rowcount != quantity:
                            # lost rows to a concurrent reservation:
                            # raising rolls the partial flip back
                            raise InsufficientInventory(
                                listing_id, denomination, quantity,
                                max(0, res.rowcount),
                            )
                        rows = (await s.execute(
                            text(SQL_RESERVED_BY), {"rid": rid}
                        )).all()

        return [
            ReservedItem(
                id=r[0], listing_id=r[1], denomination=int(r[2]),
                reservation_id=r[3], created_at=float(r[4]),
            )
            for r in rows
        ]

    async def consume(self, items: Sequence[ReservedItem], order_id: str,
                      recipient: str) -> List[SoldItem]:
        if not items:
            return []
        ts = now_ts()
        async with timeit("ledger.consume"):
            async with self.gated():
                async with self.SessionAsync() as s:
                    async with s.begin():
                        for rid, ids in _by_reservation(items).items():
                            res = await s.execute(SQL_CONSUME, {
                                "ids": ids, "rid": rid, "o": order_id,
                                "now": ts, "to": recipient,
                            })
                            if res.rowcount != len(ids):
                                raise InvalidStateTransition(
                                    "inventory items are no longer reserved"
                                )
                        sold = (await s.execute(
                            select(InventoryItem)
                            .where(InventoryItem.id.in_(
                                [it.id for it in items]))
                            .order_by(InventoryItem.created_at,
                                      InventoryItem.seq)
                        )).scalars().all()

        return [
            SoldItem(
                inventory_id=row.id, code=row.code, pin=row.pin,
                serial_number=row.serial_number,
            )
            for row in sold
        ]

    async def release(self, items: Sequence[ReservedItem]) -> int:
        if not items:
            return 0
        released = 0
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    for rid, ids in _by_reservation(items).items():
                        res = await s.execute(
                            SQL_RELEASE, {"ids": ids, "rid": rid}
                        )
                        released += max(0, res.rowcount)
        if released:
            log.info("inventory.released", count=released)
        return released

    # ----------------------------
    # Reads
    # ----------------------------
    async def count_available(self, listing_id: str,
                              denomination: int) -> int:
        await require_denomination(self.listings, listing_id, denomination)
        async with self.gated():
            async with self.SessionAsync() as s:
                n = (await s.execute(text(SQL_COUNT_AVAILABLE), {
                    "l": listing_id, "d": denomination, "now": now_ts(),
                })).scalar_one()
        return int(n)

    async def summary(self, listing_id: str) -> Dict[str, Any]:
        listing = await self.listings.get(listing_id)
        if listing is None:
            raise NotFound("Listing", listing_id)
        out: Dict[str, Any] = {
            str(d): {st: 0 for st in STATUSES}
            for d in listing.denominations
        }
        async with self.gated():
            async with self.SessionAsync() as s:
                rows = (await s.execute(
                    text(SQL_SUMMARY), {"l": listing_id}
                )).all()
        for denom, status, n in rows:
            out.setdefault(str(denom), {st: 0 for st in STATUSES})
            out[str(denom)][status] = int(n)
        return out

    # ----------------------------
    # Maintenance
    # ----------------------------
    async def expire_sweep(self, now: Optional[float] = None) -> int:
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    res = await s.execute(
                        text(SQL_EXPIRE), {"now": now or now_ts()}
                    )
        n = max(0, res.rowcount)
        if n:
            log.info("inventory.expired", count=n)
        return n

    async def mark_invalid(self, item_id: str) -> bool:
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    res = await s.execute(
                        text(SQL_MARK_INVALID), {"id": item_id}
                    )
        return res.rowcount == 1
