# fulfillment.py
"""
Fulfillment coordinator: payment confirmed -> reserve codes -> consume them
for the order -> attach -> mark fulfilled.

One attempt per order at a time: the caller first takes a TTL'd claim on the
order row. A caller that loses the claim waits for the winner and returns
the winner's result. The claim is a lease that is renewed before codes are
consumed. Reserved items are released on any failure before they were
consumed, and the order is left with fulfillment=failed and a reason. A
cancelled attempt releases its items and its claim and leaves the order
pending.
"""
from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional

import structlog

from . import config
from .dispatch import WebhookDispatcher
from .errors import AppError, InsufficientInventory, InvalidStateTransition
from .helpers import new_id, now_ts, to_iso
from .infra.timings import timeit
from .model.audit import AuditTrail
from .model.db import Order
from .model.inventory import ReservedItem
from .model.order import OrderStore, decode_codes, require_fulfillable
from .model.order import state as st

log = structlog.get_logger(__name__)


def fulfillment_result(order: Order, idempotent: bool) -> Dict[str, Any]:
    return {
        "order_id": order.id,
        "fulfillment_status": order.fulfillment_status,
        "fulfilled_at": to_iso(order.fulfilled_at),
        "fulfilled_by": order.fulfilled_by,
        "codes": decode_codes(order),
        "idempotent": idempotent,
    }


class FulfillmentCoordinator:
    def __init__(
        self,
        orders: OrderStore,
        ledger,
        dispatcher: WebhookDispatcher,
        audit: AuditTrail,
        *,
        claim_wait: float = config.FULFILLMENT_CLAIM_WAIT_SECONDS,
        low_stock_threshold: int = config.LOW_STOCK_THRESHOLD,
        poll_interval: float = 0.05,
    ) -> None:
        self.orders = orders
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.audit = audit
        self.claim_wait = claim_wait
        self.low_stock_threshold = low_stock_threshold
        self.poll_interval = poll_interval

    async def fulfill_order(self, order_id: str, actor: str = "system",
                            company_id: Optional[str] = None
                            ) -> Dict[str, Any]:
        order = await self.orders.require(order_id, company_id)
        if order.fulfillment_status == st.F_FULFILLED:
            return fulfillment_result(order, idempotent=True)
        require_fulfillable(order)

        token = new_id("claim")
        if not await self.orders.claim_fulfillment(order.id, token):
            return await self._await_winner(order.id)

        async with timeit("fulfillment.fulfill_order"):
            return await self._run(order, token, actor)

    async def reopen_fulfillment(self, order_id: str, actor: str,
                                 company_id: Optional[str] = None) -> Order:
        """Operator retry after a failed fulfillment (e.g. after restock)."""
        order = await self.orders.require(order_id, company_id)
        st.check_reopen(order.fulfillment_status)
        if not await self.orders.reopen_fulfillment(order.id):
            raise InvalidStateTransition(
                "only failed fulfillments can be reopened"
            )
        await self.audit.record(
            order.company_id, actor, "order.fulfillment_reopened", "order",
            order.id, {},
        )
        return await self.orders.require(order.id)

    async def _run(self, order: Order, token: str,
                   actor: str) -> Dict[str, Any]:
        reserved: List[ReservedItem] = []
        consumed = False
        lost = False
        try:
            reserved = await self.ledger.reserve(
                order.listing_id, order.denomination, order.quantity
            )
            # the claim is a lease: confirm we still hold it right before
            # the irreversible step
            if not await self.orders.renew_claim(order.id, token):
                await self.ledger.release(reserved)
                reserved = []
                lost = True
            else:
                sold = await self.ledger.consume(
                    reserved, order.id, order.customer_email
                )
                consumed = True
                codes = [s.as_dict() for s in sold]
                if not await self.orders.mark_fulfilled(order.id, token,
                                                        codes, actor):
                    await self._record_unattached(order, reserved, actor)
                    lost = True
        except asyncio.CancelledError:
            await self._compensate(order, reserved, consumed, actor)
            await self.orders.release_claim(order.id, token)
            raise
        except Exception as e:
            await self._compensate(order, reserved, consumed, actor)
            await self._fail(order, token, actor, e)
            raise

        if lost:
            log.warning("fulfillment.claim_lost", order_id=order.id)
            return await self._await_winner(order.id)

        log.info("fulfillment.fulfilled", order_id=order.id,
                 listing_id=order.listing_id, quantity=order.quantity)
        fresh = await self.orders.require(order.id)
        await self.audit.record(
            order.company_id, actor, "order.fulfilled", "order", order.id,
            {"quantity": order.quantity,
             "inventory_ids": [r.id for r in reserved]},
        )
        await self.dispatcher.emit(order.company_id, "order.fulfilled", {
            "order_id": order.id,
            "listing_id": order.listing_id,
            "denomination": order.denomination,
            "quantity": order.quantity,
            "customer_email": order.customer_email,
            "fulfilled_at": to_iso(fresh.fulfilled_at),
        })
        await self._stock_alerts(order)
        return fulfillment_result(fresh, idempotent=False)

    async def _compensate(self, order: Order, reserved: List[ReservedItem],
                          consumed: bool, actor: str) -> None:
        if consumed:
            await self._record_unattached(order, reserved, actor)
        elif reserved:
            await self.ledger.release(reserved)

    async def _record_unattached(self, order: Order,
                                 reserved: List[ReservedItem],
                                 actor: str) -> None:
        # sold items that no order row points at; needs an operator
        ids = [r.id for r in reserved]
        log.error("fulfillment.codes_unattached", order_id=order.id,
                  inventory_ids=ids)
        await self.audit.record(
            order.company_id, actor, "order.fulfillment_codes_unattached",
            "order", order.id, {"inventory_ids": ids},
        )

    async def _fail(self, order: Order, token: str, actor: str,
                    exc: Exception) -> None:
        if isinstance(exc, AppError):
            reason = exc.message
        else:
            reason = str(exc) or exc.__class__.__name__
        marked = await self.orders.mark_fulfillment_failed(
            order.id, token, reason
        )
        if not marked:
            await self.orders.release_claim(order.id, token)
            return
        log.warning("fulfillment.failed", order_id=order.id, reason=reason)
        await self.audit.record(
            order.company_id, actor, "order.fulfillment_failed", "order",
            order.id, {"reason": reason},
        )
        data = {
            "order_id": order.id,
            "listing_id": order.listing_id,
            "denomination": order.denomination,
            "quantity": order.quantity,
            "reason": reason,
        }
        if isinstance(exc, InsufficientInventory):
            data["available"] = exc.available
        await self.dispatcher.emit(
            order.company_id, "order.fulfillment_failed", data
        )

    async def _await_winner(self, order_id: str) -> Dict[str, Any]:
        deadline = now_ts() + self.claim_wait
        while True:
            order = await self.orders.require(order_id)
            if order.fulfillment_status == st.F_FULFILLED:
                return fulfillment_result(order, idempotent=True)
            if order.fulfillment_status == st.F_FAILED:
                raise InvalidStateTransition(
                    "fulfillment failed: "
                    f"{order.fulfillment_failure_reason or 'unknown'}"
                )
            if order.fulfillment_claim is None:
                raise InvalidStateTransition(
                    "concurrent fulfillment attempt did not complete"
                )
            if now_ts() >= deadline:
                raise InvalidStateTransition(
                    "order is already being fulfilled"
                )
            await asyncio.sleep(self.poll_interval)

    async def _stock_alerts(self, order: Order) -> None:
        try:
            left = await self.ledger.count_available(
                order.listing_id, order.denomination
            )
        except AppError:
            log.exception("fulfillment.stock_check_failed",
                          listing_id=order.listing_id)
            return
        data = {
            "listing_id": order.listing_id,
            "denomination": order.denomination,
            "available": left,
        }
        if left == 0:
            await self.dispatcher.emit(order.company_id, "inventory.out",
                                       data)
        elif left <= self.low_stock_threshold:
            data["threshold"] = self.low_stock_threshold
            await self.dispatcher.emit(order.company_id, "inventory.low",
                                       data)
