# model/order/store.py
"""
Order persistence.

Every state change is a conditional UPDATE on the expected current status;
a method returns False when the row was not in that state any more, and the
caller decides whether that is an error or an idempotent no-op.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional

import orjson
from sqlalchemy import select, text, update

from ...errors import NotFound
from ...helpers import now_ts
from ...infra.sql import Gated
from ..db import Order
from . import state as st


SQL_BEGIN_PROCESSING = r"""
UPDATE orders
SET payment_status='processing', updated_at=:now
WHERE id=:id AND payment_status='pending'
"""

SQL_COMPLETE_PAYMENT = r"""
UPDATE orders
SET payment_status='completed', paid_at=:now, updated_at=:now,
    payment_reference=COALESCE(:ref, payment_reference)
WHERE id=:id AND payment_status='processing'
"""

SQL_FAIL_PAYMENT = r"""
UPDATE orders
SET payment_status='failed', payment_failure_reason=:reason, updated_at=:now
WHERE id=:id AND payment_status IN ('pending','processing')
"""

SQL_EXPIRE_PENDING = r"""
UPDATE orders
SET payment_status='failed', payment_failure_reason='expired',
    updated_at=:now
WHERE id=:id AND payment_status IN ('pending','processing')
  AND expires_at IS NOT NULL AND expires_at <= :now
"""

# a live fulfillment claim blocks refunds: codes may already be consumed
SQL_REFUND = r"""
UPDATE orders
SET payment_status='refunded', refunded_at=:now, updated_at=:now
WHERE id=:id AND payment_status='completed'
  AND fulfillment_status <> 'fulfilled'
  AND (fulfillment_claim IS NULL OR fulfillment_claimed_at < :stale)
"""

SQL_DISPUTE = r"""
UPDATE orders
SET payment_status='disputed', updated_at=:now
WHERE id=:id AND payment_status='completed'
"""

SQL_CLAIM = r"""
UPDATE orders
SET fulfillment_claim=:token, fulfillment_claimed_at=:now, updated_at=:now
WHERE id=:id AND payment_status='completed'
  AND fulfillment_status='pending'
  AND (fulfillment_claim IS NULL OR fulfillment_claimed_at < :stale)
"""

SQL_RENEW_CLAIM = r"""
UPDATE orders
SET fulfillment_claimed_at=:now
WHERE id=:id AND fulfillment_claim=:token AND fulfillment_status='pending'
"""

SQL_UNCLAIM = r"""
UPDATE orders
SET fulfillment_claim=NULL, fulfillment_claimed_at=NULL
WHERE id=:id AND fulfillment_claim=:token
"""

SQL_FULFILLMENT_FAILED = r"""
UPDATE orders
SET fulfillment_status='failed', fulfillment_failure_reason=:reason,
    fulfillment_claim=NULL, fulfillment_claimed_at=NULL, updated_at=:now
WHERE id=:id AND fulfillment_status='pending'
  AND fulfillment_claim=:token
"""

SQL_REOPEN = r"""
UPDATE orders
SET fulfillment_status='pending', fulfillment_failure_reason=NULL,
    updated_at=:now
WHERE id=:id AND fulfillment_status='failed'
"""

SQL_EXPIRED_PENDING_IDS = r"""
SELECT id FROM orders
WHERE payment_status IN ('pending','processing')
  AND expires_at IS NOT NULL AND expires_at <= :now
ORDER BY expires_at
LIMIT :limit
"""


def decode_codes(order: Order) -> List[Dict[str, Any]]:
    if not order.gift_card_codes:
        return []
    return orjson.loads(order.gift_card_codes)


class OrderStore:
    def __init__(self, SessionAsync, gated: Gated,
                 claim_ttl: float = 60.0) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated
        self.claim_ttl = claim_ttl

    async def _exec(self, sql: str, params: Dict[str, Any]) -> int:
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    res = await s.execute(text(sql), params)
        return res.rowcount

    # ----------------------------
    # Reads / create
    # ----------------------------
    async def create(self, order: Order) -> Order:
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    s.add(order)
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        async with self.gated():
            async with self.SessionAsync() as s:
                return await s.get(Order, order_id)

    async def require(self, order_id: str,
                      company_id: Optional[str] = None) -> Order:
        order = await self.get(order_id)
        if order is None or (
                company_id is not None and order.company_id != company_id):
            raise NotFound("Order", order_id)
        return order

    async def find_by_reference(self, reference: str) -> Optional[Order]:
        async with self.gated():
            async with self.SessionAsync() as s:
                return (await s.execute(
                    select(Order).where(Order.payment_reference == reference)
                )).scalars().first()

    async def has_customer(self, company_id: str, email: str) -> bool:
        async with self.gated():
            async with self.SessionAsync() as s:
                row = (await s.execute(text(
                    "SELECT 1 FROM orders "
                    "WHERE company_id=:c AND customer_email=:e LIMIT 1"
                ), {"c": company_id, "e": email})).first()
        return row is not None

    async def set_reference(self, order_id: str, reference: str) -> None:
        await self._exec(
            "UPDATE orders SET payment_reference=:ref, updated_at=:now "
            "WHERE id=:id",
            {"id": order_id, "ref": reference, "now": now_ts()},
        )

    # ----------------------------
    # Payment axis
    # ----------------------------
    async def begin_processing(self, order_id: str) -> bool:
        return await self._exec(
            SQL_BEGIN_PROCESSING, {"id": order_id, "now": now_ts()}
        ) == 1

    async def complete_payment(self, order_id: str,
                               reference: Optional[str] = None) -> bool:
        return await self._exec(SQL_COMPLETE_PAYMENT, {
            "id": order_id, "ref": reference, "now": now_ts(),
        }) == 1

    async def fail_payment(self, order_id: str, reason: str) -> bool:
        return await self._exec(SQL_FAIL_PAYMENT, {
            "id": order_id, "reason": reason, "now": now_ts(),
        }) == 1

    async def refund(self, order_id: str) -> bool:
        ts = now_ts()
        return await self._exec(SQL_REFUND, {
            "id": order_id, "now": ts, "stale": ts - self.claim_ttl,
        }) == 1

    async def dispute(self, order_id: str) -> bool:
        return await self._exec(
            SQL_DISPUTE, {"id": order_id, "now": now_ts()}
        ) == 1

    async def expired_pending_ids(self, now: float,
                                  limit: int = 500) -> List[str]:
        async with self.gated():
            async with self.SessionAsync() as s:
                rows = (await s.execute(
                    text(SQL_EXPIRED_PENDING_IDS),
                    {"now": now, "limit": limit},
                )).all()
        return [r[0] for r in rows]

    async def expire_pending(self, order_id: str, now: float) -> bool:
        return await self._exec(
            SQL_EXPIRE_PENDING, {"id": order_id, "now": now}
        ) == 1

    # ----------------------------
    # Fulfillment axis
    # ----------------------------
    async def claim_fulfillment(self, order_id: str, token: str) -> bool:
        ts = now_ts()
        return await self._exec(SQL_CLAIM, {
            "id": order_id, "token": token, "now": ts,
            "stale": ts - self.claim_ttl,
        }) == 1

    async def renew_claim(self, order_id: str, token: str) -> bool:
        return await self._exec(SQL_RENEW_CLAIM, {
            "id": order_id, "token": token, "now": now_ts(),
        }) == 1

    async def release_claim(self, order_id: str, token: str) -> None:
        await self._exec(SQL_UNCLAIM, {"id": order_id, "token": token})

    async def mark_fulfilled(self, order_id: str, token: str,
                             codes: List[Dict[str, Any]],
                             actor: str) -> bool:
        ts = now_ts()
        # typed statement so gift_card_codes goes through EncryptedString
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.fulfillment_status == st.F_PENDING,
                Order.fulfillment_claim == token,
            )
            .values(
                fulfillment_status=st.F_FULFILLED,
                fulfilled_at=ts,
                fulfilled_by=actor,
                gift_card_codes=orjson.dumps(codes).decode(),
                fulfillment_claim=None,
                fulfillment_claimed_at=None,
                updated_at=ts,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    res = await s.execute(stmt)
        return res.rowcount == 1

    async def mark_fulfillment_failed(self, order_id: str, token: str,
                                      reason: str) -> bool:
        return await self._exec(SQL_FULFILLMENT_FAILED, {
            "id": order_id, "token": token, "reason": reason[:500],
            "now": now_ts(),
        }) == 1

    async def reopen_fulfillment(self, order_id: str) -> bool:
        return await self._exec(
            SQL_REOPEN, {"id": order_id, "now": now_ts()}
        ) == 1
