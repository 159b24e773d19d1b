# services.py
"""Wires stores and services together for one process."""
from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
import structlog
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .checkout import CheckoutService
from .dispatch import WebhookDispatcher
from .errors import AppError
from .fulfillment import FulfillmentCoordinator
from .infra.sql import open_database
from .model.audit import AuditTrail
from .model.db import create_schema
from .model.inventory import new_ledger
from .model.listing import ListingStore
from .model.order import OrderStore
from .model.webhook import DeliveryLog, EndpointStore
from .payments import MockPay, PaymentAdapter
from .ratelimit import RateLimiter, new_limiter

log = structlog.get_logger(__name__)


@dataclass
class Services:
    engine: Any
    listings: ListingStore
    ledger: Any
    orders: OrderStore
    audit: AuditTrail
    endpoints: EndpointStore
    deliveries: DeliveryLog
    dispatcher: WebhookDispatcher
    limiter: RateLimiter
    adapter: PaymentAdapter
    coordinator: FulfillmentCoordinator
    checkout: CheckoutService
    http: httpx.AsyncClient
    redis: Optional[redis.Redis] = None
    _maintenance: Optional[asyncio.Task] = field(
        default=None, repr=False, compare=False
    )

    async def maintain(self, now: Optional[float] = None) -> Dict[str, int]:
        """One sweep: expire abandoned orders and dated codes, prune old
        delivery records. A failing step is logged and the rest run."""
        steps = (
            ("orders_expired",
             lambda: self.checkout.expire_abandoned_orders(now=now)),
            ("items_expired", lambda: self.ledger.expire_sweep(now)),
            ("deliveries_pruned", self.dispatcher.prune_deliveries),
        )
        out: Dict[str, int] = {}
        for name, step in steps:
            try:
                out[name] = await step()
            except (AppError, SQLAlchemyError):
                log.exception("maintenance.step_failed", step=name)
                out[name] = 0
        return out

    def start_maintenance(
        self, interval: float = config.MAINTENANCE_INTERVAL_SECONDS
    ) -> None:
        if self._maintenance is None or self._maintenance.done():
            self._maintenance = asyncio.create_task(
                self._maintenance_loop(interval)
            )

    async def _maintenance_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.maintain()

    async def aclose(self) -> None:
        if self._maintenance is not None:
            self._maintenance.cancel()
            await asyncio.gather(self._maintenance, return_exceptions=True)
            self._maintenance = None
        await self.dispatcher.aclose()
        await self.http.aclose()
        if self.redis is not None:
            await self.redis.close()
        await self.engine.dispose()


def new_redis(url: str = config.REDIS_URL) -> redis.Redis:
    return redis.from_url(
        url,
        decode_responses=True,
        max_connections=config.REDIS_MAX_CONN,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        retry_on_timeout=True,
    )


def new_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=config.WEBHOOK_TIMEOUT_SECONDS,
        follow_redirects=False,
        limits=httpx.Limits(
            max_connections=256, max_keepalive_connections=64
        ),
    )


async def build_services(
    database_url: str = config.DATABASE_URL,
    *,
    inventory_backend: Optional[str] = None,
    ratelimit_backend: Optional[str] = None,
    redis_client: Optional[redis.Redis] = None,
    http: Optional[httpx.AsyncClient] = None,
    adapter: Optional[PaymentAdapter] = None,
    dispatcher_options: Optional[Dict[str, Any]] = None,
    coordinator_options: Optional[Dict[str, Any]] = None,
    create_tables: bool = True,
) -> Services:
    db = open_database(database_url)
    engine, SessionAsync, gated = db.engine, db.SessionAsync, db.gated
    if create_tables:
        async with engine.begin() as conn:
            await create_schema(conn)

    ratelimit_backend = (ratelimit_backend or config.RATELIMIT_BACKEND)
    if ratelimit_backend == "redis" and redis_client is None:
        redis_client = new_redis()
    http = http or new_http_client()

    listings = ListingStore(SessionAsync, gated)
    ledger = new_ledger(
        listings=listings,
        backend=inventory_backend or config.INVENTORY_BACKEND,
        SessionAsync=SessionAsync,
        gated=gated,
        dialect=db.dialect,
    )
    orders = OrderStore(SessionAsync, gated,
                        claim_ttl=config.FULFILLMENT_CLAIM_TTL_SECONDS)
    audit = AuditTrail(SessionAsync, gated)
    endpoints = EndpointStore(SessionAsync, gated)
    deliveries = DeliveryLog(SessionAsync, gated)
    dispatcher = WebhookDispatcher(endpoints, deliveries, http, audit,
                                   **(dispatcher_options or {}))
    adapter = adapter or MockPay()
    coordinator = FulfillmentCoordinator(orders, ledger, dispatcher, audit,
                                         **(coordinator_options or {}))
    checkout = CheckoutService(listings, ledger, orders, adapter,
                               coordinator, dispatcher, audit)
    limiter = new_limiter(backend=ratelimit_backend, r=redis_client)

    log.info("services.ready", database=db.dialect,
             inventory_backend=ledger.backend,
             ratelimit_backend=limiter.backend)
    return Services(
        engine=engine,
        listings=listings,
        ledger=ledger,
        orders=orders,
        audit=audit,
        endpoints=endpoints,
        deliveries=deliveries,
        dispatcher=dispatcher,
        limiter=limiter,
        adapter=adapter,
        coordinator=coordinator,
        checkout=checkout,
        http=http,
        redis=redis_client,
    )
