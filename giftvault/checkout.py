# checkout.py
"""
Checkout, payment verification, inbound provider events and refunds.

Codes are not reserved at checkout: availability is checked when the order
is created and allocation happens only once payment is confirmed.
"""
from __future__ import annotations
from typing import Any, Dict, Optional

import structlog

from . import config
from .dispatch import WebhookDispatcher
from .errors import (
    AppError, ExternalServiceError, InsufficientInventory,
    InvalidStateTransition, NotFound, ValidationError,
)
from .fulfillment import FulfillmentCoordinator
from .helpers import (
    from_cents, is_valid_email, new_id, now_ts, pct_of, to_iso,
)
from .crypto import mask
from .infra.timings import timeit
from .model.audit import AuditTrail
from .model.db import Listing, Order
from .model.listing import ListingStore
from .model.order import (
    PAYMENT_METHODS, OrderStore, decode_codes, require_refundable,
)
from .model.order import state as st
from .payments import PAY_COMPLETED, PAY_FAILED, PaymentAdapter

log = structlog.get_logger(__name__)


# ----------------------------
# Pricing
# ----------------------------
def price(listing: Listing, denomination: int,
          quantity: int) -> Dict[str, int]:
    """All amounts in cents, rounded half-up."""
    card_value = denomination * quantity
    discount = pct_of(card_value, listing.discount_percentage)
    fee = (pct_of(card_value - discount, listing.seller_fee_percentage)
           + (listing.seller_fee_fixed or 0))
    return {
        "price_per_unit": denomination - pct_of(
            denomination, listing.discount_percentage),
        "subtotal": card_value,
        "discount": discount,
        "fee": fee,
        "total": card_value - discount + fee,
    }


def order_to_dict(order: Order, reveal: bool = False) -> Dict[str, Any]:
    codes = decode_codes(order)
    if not reveal:
        codes = [
            {**c, "code": mask(c.get("code")), "pin": mask(c.get("pin"))}
            for c in codes
        ]
    return {
        "id": order.id,
        "company_id": order.company_id,
        "listing_id": order.listing_id,
        "listing_title": order.listing_title,
        "brand": order.brand,
        "denomination": from_cents(order.denomination),
        "quantity": order.quantity,
        "price_per_unit": from_cents(order.price_per_unit),
        "discount_percentage": order.discount_percentage,
        "subtotal": from_cents(order.subtotal),
        "discount": from_cents(order.discount),
        "fee": from_cents(order.fee),
        "total": from_cents(order.total),
        "currency": order.currency,
        "customer_email": order.customer_email,
        "customer_name": order.customer_name,
        "payment_method": order.payment_method,
        "payment_status": order.payment_status,
        "payment_failure_reason": order.payment_failure_reason,
        "fulfillment_status": order.fulfillment_status,
        "fulfillment_failure_reason": order.fulfillment_failure_reason,
        "gift_card_codes": codes,
        "paid_at": to_iso(order.paid_at),
        "fulfilled_at": to_iso(order.fulfilled_at),
        "fulfilled_by": order.fulfilled_by,
        "refunded_at": to_iso(order.refunded_at),
        "expires_at": to_iso(order.expires_at),
        "created_at": to_iso(order.created_at),
    }


def _event_data(order: Order) -> Dict[str, Any]:
    return {
        "order_id": order.id,
        "listing_id": order.listing_id,
        "denomination": order.denomination,
        "quantity": order.quantity,
        "total": order.total,
        "currency": order.currency,
        "customer_email": order.customer_email,
        "payment_status": order.payment_status,
    }


class CheckoutService:
    def __init__(
        self,
        listings: ListingStore,
        ledger,
        orders: OrderStore,
        adapter: PaymentAdapter,
        coordinator: FulfillmentCoordinator,
        dispatcher: WebhookDispatcher,
        audit: AuditTrail,
        *,
        order_ttl_minutes: int = config.ORDER_TTL_MINUTES,
    ) -> None:
        self.listings = listings
        self.ledger = ledger
        self.orders = orders
        self.adapter = adapter
        self.coordinator = coordinator
        self.dispatcher = dispatcher
        self.audit = audit
        self.order_ttl = order_ttl_minutes * 60

    # ----------------------------
    # Listings
    # ----------------------------
    async def create_listing(self, company_id: str, actor: str,
                             **fields) -> Listing:
        listing = await self.listings.create(company_id, **fields)
        await self.audit.record(
            company_id, actor, "listing.created", "listing", listing.id,
            {"title": listing.title, "denominations": listing.denominations},
        )
        return listing

    # ----------------------------
    # Checkout
    # ----------------------------
    async def create_order(
        self,
        company_id: str,
        listing_id: str,
        denomination: int,
        quantity: int,
        customer_email: str,
        customer_name: Optional[str] = None,
        payment_method: str = "mock",
        actor: str = "customer",
    ) -> Order:
        if quantity < 1:
            raise ValidationError("quantity must be at least 1")
        if not is_valid_email(customer_email):
            raise ValidationError("invalid customer email")
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"unknown payment method: {payment_method}")
        listing = await self.listings.require(listing_id, company_id)
        if listing.status != "active":
            raise ValidationError("listing is not active")
        if denomination not in listing.denominations:
            raise NotFound("Denomination", from_cents(denomination))

        available = await self.ledger.count_available(listing_id,
                                                      denomination)
        if available < quantity:
            raise InsufficientInventory(listing_id, denomination, quantity,
                                        available)

        email = customer_email.strip().lower()
        new_customer = not await self.orders.has_customer(company_id, email)
        p = price(listing, denomination, quantity)
        ts = now_ts()
        order_id = new_id("order")
        session = self.adapter.create_session(order_id, p["total"],
                                              listing.currency)
        order = Order(
            id=order_id,
            company_id=company_id,
            listing_id=listing.id,
            listing_title=listing.title,
            brand=listing.brand,
            denomination=denomination,
            quantity=quantity,
            discount_percentage=listing.discount_percentage,
            currency=listing.currency,
            customer_email=email,
            customer_name=customer_name,
            payment_method=payment_method,
            payment_reference=session["payment_session_id"],
            payment_status=st.PENDING,
            fulfillment_status=st.F_PENDING,
            expires_at=ts + self.order_ttl,
            created_at=ts,
            updated_at=ts,
            **p,
        )
        async with timeit("checkout.create_order"):
            await self.orders.create(order)

        log.info("order.created", order_id=order.id, listing_id=listing.id,
                 quantity=quantity, total=order.total)
        await self.audit.record(
            company_id, actor, "order.created", "order", order.id,
            {"quantity": quantity, "total": order.total},
        )
        if new_customer:
            await self.dispatcher.emit(company_id, "customer.created", {
                "email": email, "name": customer_name,
            })
        await self.dispatcher.emit(company_id, "order.created",
                                   _event_data(order))
        return order

    # ----------------------------
    # Payment verification
    # ----------------------------
    async def verify_payment(self, order_id: str,
                             token: Optional[str] = None,
                             company_id: Optional[str] = None
                             ) -> Dict[str, Any]:
        order = await self.orders.require(order_id, company_id)
        if order.payment_status == st.COMPLETED:
            return {"order": order, "idempotent": True, "fulfillment": None}
        if order.payment_status not in (st.PENDING, st.PROCESSING):
            raise InvalidStateTransition(
                f"payment is already {order.payment_status}"
            )
        if order.payment_status == st.PENDING:
            st.check_payment(st.PENDING, st.PROCESSING)
            await self.orders.begin_processing(order.id)

        try:
            async with timeit("payments.verify"):
                verdict = await self.adapter.verify_payment(
                    order.payment_reference, token
                )
        except ExternalServiceError as e:
            await self._payment_failed(order, e.message)
            raise

        if verdict == PAY_COMPLETED:
            return await self._payment_completed(order, idempotent=False)
        if verdict == PAY_FAILED:
            await self._payment_failed(order, "declined by provider")
            return {
                "order": await self.orders.require(order.id),
                "idempotent": False,
                "fulfillment": None,
            }
        # provider has no verdict yet; order stays in processing
        return {
            "order": await self.orders.require(order.id),
            "idempotent": False,
            "fulfillment": None,
        }

    async def _payment_completed(self, order: Order,
                                 idempotent: bool) -> Dict[str, Any]:
        if not await self.orders.complete_payment(order.id):
            fresh = await self.orders.require(order.id)
            if fresh.payment_status == st.COMPLETED:
                return {"order": fresh, "idempotent": True,
                        "fulfillment": None}
            raise InvalidStateTransition(
                f"payment is already {fresh.payment_status}"
            )
        order = await self.orders.require(order.id)
        log.info("order.paid", order_id=order.id, total=order.total)
        await self.audit.record(
            order.company_id, "system", "order.paid", "order", order.id,
            {"reference": order.payment_reference},
        )
        await self.dispatcher.emit(order.company_id, "order.paid",
                                   _event_data(order))

        fulfillment = await self._auto_fulfill(order)
        return {
            "order": await self.orders.require(order.id),
            "idempotent": idempotent,
            "fulfillment": fulfillment,
        }

    async def _auto_fulfill(self, order: Order) -> Dict[str, Any]:
        listing = await self.listings.get(order.listing_id)
        outcome = {"attempted": False, "succeeded": False, "error": None}
        if listing is None or not listing.auto_fulfill:
            return outcome
        outcome["attempted"] = True
        try:
            await self.coordinator.fulfill_order(order.id, actor="system")
            outcome["succeeded"] = True
        except AppError as e:
            # payment stands; fulfillment can be retried by an operator
            outcome["error"] = e.message
            log.warning("order.auto_fulfill_failed", order_id=order.id,
                        error=e.message)
        return outcome

    async def _payment_failed(self, order: Order, reason: str) -> bool:
        if not await self.orders.fail_payment(order.id, reason):
            return False
        log.info("order.payment_failed", order_id=order.id, reason=reason)
        fresh = await self.orders.require(order.id)
        await self.audit.record(
            order.company_id, "system", "order.failed", "order", order.id,
            {"reason": reason},
        )
        await self.dispatcher.emit(order.company_id, "order.failed",
                                   {**_event_data(fresh), "reason": reason})
        return True

    # ----------------------------
    # Inbound provider events
    # ----------------------------
    async def apply_payment_event(self, payload: bytes,
                                  headers: dict) -> Dict[str, Any]:
        event = self.adapter.verify_webhook(payload, headers)
        kind = self.adapter.event_kind(event)
        psid, idem = self.adapter.event_ids(event)
        if not psid:
            raise ValidationError("missing payment_session_id")
        order = await self.orders.find_by_reference(psid)
        if order is None:
            raise NotFound("Payment session", psid)

        if kind == "succeeded":
            if order.payment_status == st.COMPLETED:
                return self._event_ack(order, idempotent=True)
            if order.payment_status not in (st.PENDING, st.PROCESSING):
                raise InvalidStateTransition(
                    f"payment is already {order.payment_status}"
                )
            if order.payment_status == st.PENDING:
                st.check_payment(st.PENDING, st.PROCESSING)
                await self.orders.begin_processing(order.id)
            res = await self._payment_completed(order, idempotent=False)
            return self._event_ack(res["order"], res["idempotent"])
        if kind in ("failed", "canceled"):
            changed = await self._payment_failed(order, f"payment {kind}")
            fresh = await self.orders.require(order.id)
            return self._event_ack(fresh, idempotent=not changed)
        if kind == "disputed":
            if order.payment_status == st.DISPUTED:
                return self._event_ack(order, idempotent=True)
            st.check_payment(order.payment_status, st.DISPUTED)
            if not await self.orders.dispute(order.id):
                raise InvalidStateTransition("payment is no longer completed")
            fresh = await self.orders.require(order.id)
            await self.audit.record(
                order.company_id, "system", "order.disputed", "order",
                order.id, {"idempotency_key": idem},
            )
            await self.dispatcher.emit(order.company_id, "order.disputed",
                                       _event_data(fresh))
            return self._event_ack(fresh, idempotent=False)
        raise ValidationError(f"unknown event kind: {kind}")

    def _event_ack(self, order: Order, idempotent: bool) -> Dict[str, Any]:
        return {
            "ok": True,
            "order_id": order.id,
            "payment_status": order.payment_status,
            "fulfillment_status": order.fulfillment_status,
            "idempotent": idempotent,
        }

    # ----------------------------
    # Refunds / abandonment
    # ----------------------------
    async def refund_order(self, order_id: str, actor: str,
                           reason: Optional[str] = None,
                           company_id: Optional[str] = None) -> Order:
        order = await self.orders.require(order_id, company_id)
        require_refundable(order)
        if not await self.orders.refund(order.id):
            raise InvalidStateTransition(
                "order cannot be refunded while it is being fulfilled"
            )
        order = await self.orders.require(order.id)
        log.info("order.refunded", order_id=order.id, actor=actor)
        await self.audit.record(
            order.company_id, actor, "order.refunded", "order", order.id,
            {"reason": reason, "total": order.total},
        )
        await self.dispatcher.emit(order.company_id, "order.refunded",
                                   {**_event_data(order), "reason": reason})
        return order

    async def expire_abandoned_orders(self,
                                      now: Optional[float] = None) -> int:
        now = now or now_ts()
        n = 0
        for order_id in await self.orders.expired_pending_ids(now):
            if await self.orders.expire_pending(order_id, now):
                n += 1
                order = await self.orders.require(order_id)
                await self.dispatcher.emit(
                    order.company_id, "order.failed",
                    {**_event_data(order), "reason": "expired"},
                )
        if n:
            log.info("orders.expired", count=n)
        return n
