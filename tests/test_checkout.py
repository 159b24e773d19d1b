import time
from types import SimpleNamespace

import orjson
import pytest

from giftvault.checkout import order_to_dict, price
from giftvault.errors import (
    ExternalServiceError, InsufficientInventory, InvalidStateTransition,
    NotFound, ValidationError,
)

from conftest import make_listing, paid_order, stock

pytestmark = pytest.mark.asyncio

HOOK = "https://hooks.example.com/orders"


def _sent_events(receiver, url=HOOK):
    return [r.headers["X-Webhook-Event"] for r in receiver.to(url)]


async def _subscribe(s, *events):
    await s.endpoints.register("co_1", url=HOOK, events=list(events),
                               created_by="user_1")


async def test_price_breakdown_in_cents():
    listing = SimpleNamespace(discount_percentage=10,
                              seller_fee_percentage=2.5,
                              seller_fee_fixed=30)

    p = price(listing, 1000, 2)

    assert p == {
        "price_per_unit": 900,
        "subtotal": 2000,
        "discount": 200,
        "fee": 75,
        "total": 1875,
    }


async def test_create_order_snapshots_listing(services, receiver):
    s = services
    await _subscribe(s, "order.created", "customer.created")
    listing = await make_listing(s, discount_percentage=10,
                                 seller_fee_percentage=2.5,
                                 seller_fee_fixed="0.30")
    await stock(s, listing, "10", ["A", "B"])

    order = await s.checkout.create_order(
        "co_1", listing.id, 1000, 2, " Buyer@Example.com ", "Buyer",
    )

    assert order.payment_status == "pending"
    assert order.fulfillment_status == "pending"
    assert order.customer_email == "buyer@example.com"
    assert order.total == 1875
    assert order.payment_reference.startswith("mock_")
    assert order.expires_at > time.time()
    # availability is checked, nothing is reserved yet
    assert await s.ledger.count_available(listing.id, 1000) == 2

    await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                  "buyer@example.com")
    await s.dispatcher.drain()
    assert _sent_events(receiver) == [
        "customer.created", "order.created", "order.created",
    ]


async def test_create_order_validation(services):
    s = services
    listing = await make_listing(s)
    await stock(s, listing, "10", ["A"])

    with pytest.raises(InsufficientInventory) as exc:
        await s.checkout.create_order("co_1", listing.id, 1000, 2,
                                      "buyer@example.com")
    assert exc.value.available == 1
    with pytest.raises(ValidationError):
        await s.checkout.create_order("co_1", listing.id, 1000, 0,
                                      "buyer@example.com")
    with pytest.raises(ValidationError):
        await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                      "not-an-email")
    with pytest.raises(ValidationError):
        await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                      "buyer@example.com",
                                      payment_method="barter")
    with pytest.raises(NotFound):
        await s.checkout.create_order("co_1", listing.id, 7777, 1,
                                      "buyer@example.com")
    with pytest.raises(NotFound):
        await s.checkout.create_order("co_2", listing.id, 1000, 1,
                                      "buyer@example.com")


async def test_verify_payment_auto_fulfills(services, receiver):
    s = services
    await _subscribe(s, "order.paid", "order.fulfilled")
    listing = await make_listing(s)
    await stock(s, listing, "10", ["A", "B"])
    order = await s.checkout.create_order("co_1", listing.id, 1000, 2,
                                          "buyer@example.com")

    res = await s.checkout.verify_payment(order.id, "succeeded")

    assert res["idempotent"] is False
    assert res["fulfillment"] == {"attempted": True, "succeeded": True,
                                  "error": None}
    assert res["order"].payment_status == "completed"
    assert res["order"].fulfillment_status == "fulfilled"
    assert res["order"].paid_at is not None
    await s.dispatcher.drain()
    assert _sent_events(receiver) == ["order.paid", "order.fulfilled"]

    again = await s.checkout.verify_payment(order.id, "succeeded")
    assert again["idempotent"] is True
    assert again["fulfillment"] is None
    summary = await s.ledger.summary(listing.id)
    assert summary["1000"]["sold"] == 2


async def test_auto_fulfill_shortage_keeps_payment(services):
    s = services
    listing = await make_listing(s)
    ids = await stock(s, listing, "10", ["A"])
    order = await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                          "buyer@example.com")
    await s.ledger.mark_invalid(ids[0])

    res = await s.checkout.verify_payment(order.id, "succeeded")

    assert res["order"].payment_status == "completed"
    assert res["order"].fulfillment_status == "failed"
    assert res["fulfillment"]["attempted"] is True
    assert res["fulfillment"]["succeeded"] is False
    assert "Not enough inventory" in res["fulfillment"]["error"]


async def test_declined_payment(services, receiver):
    s = services
    await _subscribe(s, "order.failed")
    listing = await make_listing(s)
    await stock(s, listing, "10", ["A"])
    order = await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                          "buyer@example.com")

    res = await s.checkout.verify_payment(order.id, "failed")

    assert res["order"].payment_status == "failed"
    assert res["order"].payment_failure_reason == "declined by provider"
    with pytest.raises(InvalidStateTransition):
        await s.checkout.verify_payment(order.id, "succeeded")
    await s.dispatcher.drain()
    assert _sent_events(receiver) == ["order.failed"]


async def test_provider_error_fails_payment(services):
    s = services
    listing = await make_listing(s)
    await stock(s, listing, "10", ["A"])
    order = await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                          "buyer@example.com")

    with pytest.raises(ExternalServiceError):
        await s.checkout.verify_payment(order.id, "bogus")

    fresh = await s.orders.require(order.id)
    assert fresh.payment_status == "failed"
    assert "bogus" in fresh.payment_failure_reason


async def test_no_verdict_leaves_order_processing(services):
    s = services
    listing = await make_listing(s)
    await stock(s, listing, "10", ["A"])
    order = await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                          "buyer@example.com")

    res = await s.checkout.verify_payment(order.id)
    assert res["order"].payment_status == "processing"

    s.adapter.settle(order.payment_reference, "succeeded")
    res = await s.checkout.verify_payment(order.id)
    assert res["order"].payment_status == "completed"


async def test_refund_before_fulfillment(services, receiver):
    s = services
    await _subscribe(s, "order.refunded")
    listing = await make_listing(s, auto_fulfill=False)
    await stock(s, listing, "10", ["A"])
    order = await paid_order(s, listing)

    refunded = await s.checkout.refund_order(order.id, "admin_1",
                                             reason="customer request")

    assert refunded.payment_status == "refunded"
    assert refunded.refunded_at is not None
    with pytest.raises(InvalidStateTransition):
        await s.coordinator.fulfill_order(order.id)
    with pytest.raises(InvalidStateTransition):
        await s.checkout.refund_order(order.id, "admin_1")
    await s.dispatcher.drain()
    assert _sent_events(receiver) == ["order.refunded"]
    audit = await s.audit.list("co_1")
    assert audit[0]["action"] == "order.refunded"
    assert audit[0]["actor"] == "admin_1"


async def test_refund_rules(services):
    s = services
    listing = await make_listing(s, auto_fulfill=False)
    await stock(s, listing, "10", ["A", "B"])

    fulfilled = await paid_order(s, listing)
    await s.coordinator.fulfill_order(fulfilled.id)
    with pytest.raises(InvalidStateTransition):
        await s.checkout.refund_order(fulfilled.id, "admin_1")

    unpaid = await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                           "buyer@example.com")
    with pytest.raises(InvalidStateTransition):
        await s.checkout.refund_order(unpaid.id, "admin_1")

    claimed = await paid_order(s, listing)
    assert await s.orders.claim_fulfillment(claimed.id, "tok")
    with pytest.raises(InvalidStateTransition):
        await s.checkout.refund_order(claimed.id, "admin_1")

    with pytest.raises(NotFound):
        await s.checkout.refund_order(claimed.id, "admin_1",
                                      company_id="co_2")


async def test_payment_events(services):
    s = services
    listing = await make_listing(s, auto_fulfill=False)
    await stock(s, listing, "10", ["A"])
    order = await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                          "buyer@example.com")
    body = s.adapter.build_event("succeeded", order.payment_reference,
                                 order.id)
    headers = {"x-mockpay-signature": s.adapter.sign(body)}

    ack = await s.checkout.apply_payment_event(body, headers)
    assert ack["payment_status"] == "completed"
    assert ack["idempotent"] is False

    replay = await s.checkout.apply_payment_event(body, headers)
    assert replay["idempotent"] is True

    dispute = s.adapter.build_event("disputed", order.payment_reference,
                                    order.id)
    ack = await s.checkout.apply_payment_event(
        dispute, {"x-mockpay-signature": s.adapter.sign(dispute)}
    )
    assert ack["payment_status"] == "disputed"


async def test_payment_completes_only_from_processing(services):
    s = services
    listing = await make_listing(s, auto_fulfill=False)
    await stock(s, listing, "10", ["A"])
    order = await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                          "buyer@example.com")

    assert not await s.orders.complete_payment(order.id)
    assert (await s.orders.require(order.id)).payment_status == "pending"

    # a provider confirmation on a pending order steps through processing
    body = s.adapter.build_event("succeeded", order.payment_reference,
                                 order.id)
    ack = await s.checkout.apply_payment_event(
        body, {"x-mockpay-signature": s.adapter.sign(body)}
    )
    assert ack["payment_status"] == "completed"
    fresh = await s.orders.require(order.id)
    assert fresh.payment_status == "completed"
    assert fresh.paid_at is not None


async def test_payment_event_rejects_bad_input(services):
    s = services
    body = s.adapter.build_event("succeeded", "mock_unknown", "order_x")

    with pytest.raises(ValidationError):
        await s.checkout.apply_payment_event(
            body, {"x-mockpay-signature": "forged"}
        )
    with pytest.raises(NotFound):
        await s.checkout.apply_payment_event(
            body, {"x-mockpay-signature": s.adapter.sign(body)}
        )


async def test_canceled_event_fails_payment(services):
    s = services
    listing = await make_listing(s)
    await stock(s, listing, "10", ["A"])
    order = await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                          "buyer@example.com")
    body = s.adapter.build_event("canceled", order.payment_reference,
                                 order.id)
    headers = {"x-mockpay-signature": s.adapter.sign(body)}

    ack = await s.checkout.apply_payment_event(body, headers)
    assert ack["payment_status"] == "failed"
    assert ack["idempotent"] is False
    assert (await s.checkout.apply_payment_event(body, headers))["idempotent"]


async def test_expire_abandoned_orders(services):
    s = services
    listing = await make_listing(s, auto_fulfill=False)
    await stock(s, listing, "10", ["A", "B"])
    abandoned = await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                              "buyer@example.com")
    paid = await paid_order(s, listing)

    later = time.time() + 31 * 60
    assert await s.checkout.expire_abandoned_orders(now=later) == 1
    assert await s.checkout.expire_abandoned_orders(now=later) == 0

    fresh = await s.orders.require(abandoned.id)
    assert fresh.payment_status == "failed"
    assert fresh.payment_failure_reason == "expired"
    assert (await s.orders.require(paid.id)).payment_status == "completed"


async def test_expire_sweeps_orders_stuck_in_processing(services, receiver):
    s = services
    await _subscribe(s, "order.failed")
    listing = await make_listing(s)
    await stock(s, listing, "10", ["A"])
    order = await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                          "buyer@example.com")
    res = await s.checkout.verify_payment(order.id)
    assert res["order"].payment_status == "processing"

    later = time.time() + 31 * 60
    assert await s.checkout.expire_abandoned_orders(now=later) == 1

    fresh = await s.orders.require(order.id)
    assert fresh.payment_status == "failed"
    assert fresh.payment_failure_reason == "expired"
    await s.dispatcher.drain()
    assert _sent_events(receiver) == ["order.failed"]


async def test_order_to_dict_masks_codes(services):
    s = services
    listing = await make_listing(s, auto_fulfill=False)
    await stock(s, listing, "10", ["GIFT-1234-5678"])
    order = await paid_order(s, listing)
    await s.coordinator.fulfill_order(order.id)
    order = await s.orders.require(order.id)

    masked = order_to_dict(order)
    revealed = order_to_dict(order, reveal=True)

    assert masked["gift_card_codes"][0]["code"] != "GIFT-1234-5678"
    assert masked["gift_card_codes"][0]["code"].endswith("5678")
    assert revealed["gift_card_codes"][0]["code"] == "GIFT-1234-5678"
    assert revealed["total"] == "10.00"
    assert "GIFT-1234-5678" not in orjson.dumps(masked).decode()


async def test_inactive_listing_rejects_orders(services):
    s = services
    listing = await make_listing(s)
    await stock(s, listing, "10", ["A"])
    await s.listings.set_status(listing.id, "inactive")

    with pytest.raises(ValidationError):
        await s.checkout.create_order("co_1", listing.id, 1000, 1,
                                      "buyer@example.com")
    with pytest.raises(ValidationError):
        await s.listings.set_status(listing.id, "archived")
