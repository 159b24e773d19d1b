import asyncio

import pytest

from giftvault.errors import (
    InsufficientInventory, InvalidStateTransition, NotFound,
)

from conftest import make_listing, paid_order, stock

pytestmark = pytest.mark.asyncio


async def _setup(s, codes=("A", "B", "C")):
    listing = await make_listing(s, auto_fulfill=False)
    ids = await stock(s, listing, "10", list(codes))
    return listing, ids


async def test_fulfill_attaches_codes_in_fifo_order(services):
    s = services
    listing, _ = await _setup(s)
    order = await paid_order(s, listing, quantity=2)

    res = await s.coordinator.fulfill_order(order.id, actor="user_1")

    assert res["fulfillment_status"] == "fulfilled"
    assert res["idempotent"] is False
    assert [c["code"] for c in res["codes"]] == ["A", "B"]
    fresh = await s.orders.require(order.id)
    assert fresh.fulfilled_by == "user_1"
    assert fresh.fulfilled_at is not None
    assert fresh.fulfillment_claim is None


async def test_fulfill_twice_returns_same_codes(services):
    s = services
    listing, _ = await _setup(s)
    order = await paid_order(s, listing, quantity=2)

    first = await s.coordinator.fulfill_order(order.id)
    second = await s.coordinator.fulfill_order(order.id)

    assert second["idempotent"] is True
    assert second["codes"] == first["codes"]
    summary = await s.ledger.summary(listing.id)
    assert summary["1000"]["sold"] == 2
    assert summary["1000"]["available"] == 1


async def test_concurrent_fulfill_reserves_once(services):
    s = services
    listing, _ = await _setup(s)
    order = await paid_order(s, listing, quantity=2)

    results = await asyncio.gather(
        s.coordinator.fulfill_order(order.id),
        s.coordinator.fulfill_order(order.id),
        s.coordinator.fulfill_order(order.id),
    )

    codes = {tuple(c["code"] for c in r["codes"]) for r in results}
    assert codes == {("A", "B")}
    assert sum(not r["idempotent"] for r in results) == 1
    summary = await s.ledger.summary(listing.id)
    assert summary["1000"]["sold"] == 2
    assert summary["1000"]["reserved"] == 0


async def test_unpaid_order_is_rejected_without_reserving(services):
    s = services
    listing, _ = await _setup(s)
    order = await s.checkout.create_order(
        listing.company_id, listing.id, 1000, 1, "buyer@example.com"
    )

    with pytest.raises(InvalidStateTransition):
        await s.coordinator.fulfill_order(order.id)

    assert await s.ledger.count_available(listing.id, 1000) == 3
    fresh = await s.orders.require(order.id)
    assert fresh.fulfillment_status == "pending"


async def test_wrong_company_is_not_found(services):
    s = services
    listing, _ = await _setup(s)
    order = await paid_order(s, listing)

    with pytest.raises(NotFound):
        await s.coordinator.fulfill_order(order.id, company_id="co_other")


async def test_shortage_marks_order_failed_and_releases(services, receiver):
    s = services
    listing, ids = await _setup(s, codes=("A", "B"))
    await s.endpoints.register(
        listing.company_id, url="https://hooks.example.com/a",
        events=["order.fulfillment_failed"], created_by="user_1",
    )
    order = await paid_order(s, listing, quantity=2)
    await s.ledger.mark_invalid(ids[0])

    with pytest.raises(InsufficientInventory):
        await s.coordinator.fulfill_order(order.id)

    fresh = await s.orders.require(order.id)
    assert fresh.fulfillment_status == "failed"
    assert "Not enough inventory" in fresh.fulfillment_failure_reason
    summary = await s.ledger.summary(listing.id)
    assert summary["1000"]["reserved"] == 0
    assert summary["1000"]["available"] == 1

    await s.dispatcher.drain()
    sent = receiver.to("https://hooks.example.com/a")
    assert len(sent) == 1
    assert sent[0].headers["X-Webhook-Event"] == "order.fulfillment_failed"

    # terminal until an operator reopens it
    with pytest.raises(InvalidStateTransition):
        await s.coordinator.fulfill_order(order.id)


async def test_reopen_after_restock(services):
    s = services
    listing, ids = await _setup(s, codes=("A",))
    order = await paid_order(s, listing)
    await s.ledger.mark_invalid(ids[0])
    with pytest.raises(InsufficientInventory):
        await s.coordinator.fulfill_order(order.id)

    await stock(s, listing, "10", ["Z"])
    reopened = await s.coordinator.reopen_fulfillment(order.id, "admin_1")
    assert reopened.fulfillment_status == "pending"
    assert reopened.fulfillment_failure_reason is None

    res = await s.coordinator.fulfill_order(order.id)
    assert [c["code"] for c in res["codes"]] == ["Z"]

    with pytest.raises(InvalidStateTransition):
        await s.coordinator.reopen_fulfillment(order.id, "admin_1")


async def test_concrete_two_codes_three_orders(services):
    s = services
    listing = await make_listing(s, auto_fulfill=False)
    a = await stock(s, listing, "10", ["A"])
    b = await stock(s, listing, "10", ["B"])
    orders = [
        await paid_order(s, listing, email=f"buyer{i}@example.com")
        for i in range(3)
    ]

    results = await asyncio.gather(
        *[s.coordinator.fulfill_order(o.id) for o in orders],
        return_exceptions=True,
    )

    ok = [r for r in results if isinstance(r, dict)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert sorted(r["codes"][0]["inventory_id"] for r in ok) == sorted(a + b)
    assert len(failed) == 1
    assert isinstance(failed[0], InsufficientInventory)
    summary = await s.ledger.summary(listing.id)
    assert summary["1000"]["available"] == 0
    assert summary["1000"]["sold"] == 2


async def test_low_stock_and_out_of_stock_events(services, receiver):
    s = services
    listing, _ = await _setup(s, codes=("A", "B"))
    await s.endpoints.register(
        listing.company_id, url="https://hooks.example.com/stock",
        events=["inventory.low", "inventory.out"], created_by="user_1",
    )
    first = await paid_order(s, listing)
    second = await paid_order(s, listing, email="other@example.com")

    await s.coordinator.fulfill_order(first.id)
    await s.coordinator.fulfill_order(second.id)
    await s.dispatcher.drain()

    events = [r.headers["X-Webhook-Event"]
              for r in receiver.to("https://hooks.example.com/stock")]
    assert events == ["inventory.low", "inventory.out"]


async def test_cancelled_fulfillment_releases_items_and_claim(services,
                                                              monkeypatch):
    s = services
    listing, _ = await _setup(s, codes=("A",))
    order = await paid_order(s, listing)
    started = asyncio.Event()

    async def stuck_consume(*args, **kw):
        started.set()
        await asyncio.sleep(10)

    monkeypatch.setattr(s.ledger, "consume", stuck_consume)
    task = asyncio.create_task(s.coordinator.fulfill_order(order.id))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    fresh = await s.orders.require(order.id)
    assert fresh.fulfillment_status == "pending"
    assert fresh.fulfillment_claim is None
    summary = await s.ledger.summary(listing.id)
    assert summary["1000"]["reserved"] == 0
    assert summary["1000"]["available"] == 1

    monkeypatch.undo()
    res = await s.coordinator.fulfill_order(order.id)
    assert [c["code"] for c in res["codes"]] == ["A"]


async def test_lapsed_claim_hands_over_without_double_sale(services,
                                                           monkeypatch):
    s = services
    listing, _ = await _setup(s, codes=("A", "B"))
    order = await paid_order(s, listing)
    s.orders.claim_ttl = 0.05
    reserve = s.ledger.reserve
    calls = []

    async def slow_first_reserve(*args, **kw):
        items = await reserve(*args, **kw)
        calls.append(items)
        if len(calls) == 1:
            await asyncio.sleep(0.3)
        return items

    monkeypatch.setattr(s.ledger, "reserve", slow_first_reserve)
    stalled = asyncio.create_task(s.coordinator.fulfill_order(order.id))
    await asyncio.sleep(0.1)

    winner = await s.coordinator.fulfill_order(order.id)
    late = await stalled

    assert [c["code"] for c in winner["codes"]] == ["B"]
    assert winner["idempotent"] is False
    assert late["idempotent"] is True
    assert late["codes"] == winner["codes"]
    summary = await s.ledger.summary(listing.id)
    assert summary["1000"]["sold"] == 1
    assert summary["1000"]["available"] == 1
    assert summary["1000"]["reserved"] == 0


async def test_only_the_claim_holder_can_fail_or_renew(services):
    s = services
    listing, _ = await _setup(s)
    order = await paid_order(s, listing)
    assert await s.orders.claim_fulfillment(order.id, "tok_a")

    assert not await s.orders.mark_fulfillment_failed(order.id, "tok_b",
                                                      "boom")
    assert not await s.orders.renew_claim(order.id, "tok_b")
    assert await s.orders.renew_claim(order.id, "tok_a")
    assert await s.orders.mark_fulfillment_failed(order.id, "tok_a", "boom")

    fresh = await s.orders.require(order.id)
    assert fresh.fulfillment_status == "failed"
    assert fresh.fulfillment_claim is None
