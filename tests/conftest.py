import httpx
import pytest
import pytest_asyncio

from giftvault.helpers import to_cents
from giftvault.model.inventory import CodeInput
from giftvault.services import build_services


class Receiver:
    """httpx MockTransport handler standing in for subscriber endpoints.

    `statuses` is consumed one per request (last one repeats);
    `error` makes every request raise instead.
    """

    def __init__(self):
        self.requests = []
        self.statuses = [200]
        self.error = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        status = (self.statuses.pop(0) if len(self.statuses) > 1
                  else self.statuses[0])
        return httpx.Response(status, text="ok" if status < 400 else "nope")

    def to(self, url):
        return [r for r in self.requests if str(r.url) == url]


@pytest.fixture
def receiver():
    return Receiver()


async def _build(tmp_path, receiver, inventory_backend="sql"):
    http = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
    return await build_services(
        f"sqlite:///{tmp_path / 'giftvault.db'}",
        inventory_backend=inventory_backend,
        ratelimit_backend="memory",
        http=http,
        dispatcher_options={"retry_base": 0},
        coordinator_options={"poll_interval": 0.01},
    )


@pytest_asyncio.fixture
async def services(tmp_path, receiver):
    s = await _build(tmp_path, receiver)
    yield s
    await s.aclose()


@pytest_asyncio.fixture(params=["sql", "memory"])
async def any_services(request, tmp_path, receiver):
    s = await _build(tmp_path, receiver, inventory_backend=request.param)
    yield s
    await s.aclose()


async def make_listing(s, company_id="co_1", denominations=("10", "25"),
                       **kw):
    kw.setdefault("title", "Coffee Card")
    kw.setdefault("brand", "Beanery")
    return await s.listings.create(company_id, denominations=denominations,
                                   **kw)


async def stock(s, listing, denomination, codes, **kw):
    return await s.ledger.add_items(
        listing.company_id, listing.id, to_cents(denomination),
        [CodeInput(code=c, pin=f"pin-{c}") for c in codes],
        uploaded_by="user_1", **kw,
    )


async def paid_order(s, listing, denomination="10", quantity=1,
                     email="buyer@example.com"):
    order = await s.checkout.create_order(
        listing.company_id, listing.id, to_cents(denomination), quantity,
        email,
    )
    res = await s.checkout.verify_payment(order.id, "succeeded")
    return res["order"]
