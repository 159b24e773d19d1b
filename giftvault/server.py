from __future__ import annotations
import math
import time
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import ORJSONResponse

from . import config
from .checkout import order_to_dict
from .errors import AppError, TooManyRequests, ValidationError
from .helpers import from_cents, to_cents, to_iso
from .infra import timings
from .logs import configure_logging
from .model.inventory import CodeInput
from .model.webhook import delivery_to_dict, endpoint_to_dict
from .ratelimit import (
    check_api_key, check_invitation, check_resend, headers as rl_headers,
)
from .services import Services, build_services

log = structlog.get_logger(__name__)

app = FastAPI(
    title="GiftVault",
    default_response_class=ORJSONResponse,
)


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("services not initialized")
    return services


def actor_id(x_actor_id: Optional[str] = Header(None)) -> str:
    return (x_actor_id or "anonymous").strip() or "anonymous"


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _logging_start():
    configure_logging(config.LOG_LEVEL, config.JSON_LOGS)


@app.on_event("startup")
async def _services_start():
    if getattr(app.state, "services", None) is None:
        app.state.services = await build_services(config.DATABASE_URL)
    if config.MAINTENANCE_INTERVAL_SECONDS > 0:
        app.state.services.start_maintenance(
            config.MAINTENANCE_INTERVAL_SECONDS
        )


@app.on_event("shutdown")
async def _services_stop():
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.aclose()
        app.state.services = None


# ----------------------------
# Errors
# ----------------------------
@app.exception_handler(AppError)
async def _app_error(request: Request, exc: AppError):
    headers = {}
    if isinstance(exc, TooManyRequests):
        now = time.time()
        headers = {
            "Retry-After": str(max(1, math.ceil(exc.reset_at - now))),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(math.ceil(exc.reset_at)),
        }
    if exc.status_code >= 500:
        log.error("request.failed", path=request.url.path, code=exc.code,
                  error=exc.message)
    return ORJSONResponse({"error": exc.to_dict()},
                          status_code=exc.status_code, headers=headers)


# ----------------------------
# Helpers
# ----------------------------
def _require(payload: dict, *names: str) -> None:
    missing = [n for n in names if payload.get(n) in (None, "")]
    if missing:
        raise ValidationError(f"missing fields: {', '.join(missing)}")


def _int(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _listing_to_dict(listing) -> dict:
    return {
        "id": listing.id,
        "company_id": listing.company_id,
        "title": listing.title,
        "brand": listing.brand,
        "currency": listing.currency,
        "denominations": [from_cents(d) for d in listing.denominations],
        "discount_percentage": listing.discount_percentage,
        "seller_fee_percentage": listing.seller_fee_percentage,
        "seller_fee_fixed": from_cents(listing.seller_fee_fixed),
        "auto_fulfill": listing.auto_fulfill,
        "status": listing.status,
        "created_at": to_iso(listing.created_at),
    }


# ----------------------------
# Listings & inventory
# ----------------------------
@app.post("/api/v1/companies/{company_id}/listings", status_code=201)
async def create_listing(
    company_id: str,
    payload: dict,
    actor: str = Depends(actor_id),
    s: Services = Depends(get_services),
):
    _require(payload, "title", "brand", "denominations")
    listing = await s.checkout.create_listing(
        company_id, actor,
        title=payload["title"],
        brand=payload["brand"],
        denominations=payload["denominations"],
        currency=payload.get("currency", "USD"),
        discount_percentage=payload.get("discount_percentage", 0),
        seller_fee_percentage=payload.get("seller_fee_percentage", 0),
        seller_fee_fixed=payload.get("seller_fee_fixed", 0),
        auto_fulfill=bool(payload.get("auto_fulfill", True)),
    )
    return {"data": _listing_to_dict(listing)}


@app.post("/api/v1/companies/{company_id}/listings/{listing_id}/inventory",
          status_code=201)
async def upload_inventory(
    company_id: str,
    listing_id: str,
    payload: dict,
    actor: str = Depends(actor_id),
    s: Services = Depends(get_services),
):
    _require(payload, "denomination", "codes")
    codes = payload["codes"]
    if not isinstance(codes, list):
        raise ValidationError("codes must be a list")
    inputs = []
    for c in codes:
        if isinstance(c, str):
            inputs.append(CodeInput(code=c))
        elif isinstance(c, dict):
            inputs.append(CodeInput(
                code=str(c.get("code") or ""),
                pin=c.get("pin"),
                serial_number=c.get("serial_number"),
            ))
        else:
            raise ValidationError("each code must be a string or an object")
    expires_at = payload.get("expires_at")
    ids = await s.ledger.add_items(
        company_id, listing_id, to_cents(payload["denomination"]), inputs,
        uploaded_by=actor,
        source=payload.get("source", "bulk_upload"),
        expires_at=float(expires_at) if expires_at is not None else None,
    )
    await s.audit.record(
        company_id, actor, "inventory.uploaded", "listing", listing_id,
        {"denomination": payload["denomination"], "count": len(ids)},
    )
    return {"data": {"inventory_ids": ids, "count": len(ids)}}


@app.get(
    "/api/v1/companies/{company_id}/listings/{listing_id}/inventory/summary"
)
async def inventory_summary(
    company_id: str,
    listing_id: str,
    s: Services = Depends(get_services),
):
    await s.listings.require(listing_id, company_id)
    return {"data": await s.ledger.summary(listing_id)}


@app.get("/api/v1/marketplace/listings/{listing_id}/availability")
async def availability(
    listing_id: str,
    denomination: str,
    s: Services = Depends(get_services),
):
    cents = to_cents(denomination)
    n = await s.ledger.count_available(listing_id, cents)
    return {"data": {
        "listing_id": listing_id,
        "denomination": from_cents(cents),
        "available": n,
        "in_stock": n > 0,
    }}


# ----------------------------
# Orders
# ----------------------------
@app.post("/api/v1/companies/{company_id}/orders", status_code=201)
async def create_order(
    company_id: str,
    payload: dict,
    request: Request,
    actor: str = Depends(actor_id),
    x_api_key: Optional[str] = Header(None),
    s: Services = Depends(get_services),
):
    host = request.client.host if request.client else "-"
    principal = x_api_key or f"ip:{host}"
    rl = await check_api_key(s.limiter, principal)

    _require(payload, "listing_id", "denomination", "customer_email")
    order = await s.checkout.create_order(
        company_id,
        payload["listing_id"],
        to_cents(payload["denomination"]),
        _int(payload.get("quantity", 1), "quantity"),
        payload["customer_email"],
        customer_name=payload.get("customer_name"),
        payment_method=payload.get("payment_method", "mock"),
        actor=actor,
    )
    return ORJSONResponse(
        {"data": order_to_dict(order)}, status_code=201,
        headers=rl_headers(rl),
    )


@app.get("/api/v1/companies/{company_id}/orders/{order_id}")
async def get_order(
    company_id: str,
    order_id: str,
    s: Services = Depends(get_services),
):
    async with timings.timeit("api.get_order"):
        order = await s.orders.require(order_id, company_id)
    return {"data": order_to_dict(order)}


@app.post("/api/v1/companies/{company_id}/orders/{order_id}/verify")
async def verify_order_payment(
    company_id: str,
    order_id: str,
    payload: Optional[dict] = None,
    s: Services = Depends(get_services),
):
    token = (payload or {}).get("token")
    res = await s.checkout.verify_payment(order_id, token,
                                          company_id=company_id)
    return {
        "data": order_to_dict(res["order"]),
        "meta": {
            "idempotent": res["idempotent"],
            "fulfillment": res["fulfillment"],
        },
    }


@app.post("/api/v1/companies/{company_id}/orders/{order_id}/fulfill")
async def fulfill_order(
    company_id: str,
    order_id: str,
    actor: str = Depends(actor_id),
    s: Services = Depends(get_services),
):
    res = await s.coordinator.fulfill_order(order_id, actor=actor,
                                            company_id=company_id)
    order = await s.orders.require(order_id)
    return {
        "data": order_to_dict(order, reveal=True),
        "meta": {"idempotent": res["idempotent"]},
    }


@app.post("/api/v1/companies/{company_id}/orders/{order_id}/reopen")
async def reopen_order_fulfillment(
    company_id: str,
    order_id: str,
    actor: str = Depends(actor_id),
    s: Services = Depends(get_services),
):
    order = await s.coordinator.reopen_fulfillment(order_id, actor,
                                                   company_id=company_id)
    return {"data": order_to_dict(order)}


@app.post("/api/v1/companies/{company_id}/orders/{order_id}/refund")
async def refund_order(
    company_id: str,
    order_id: str,
    payload: Optional[dict] = None,
    actor: str = Depends(actor_id),
    s: Services = Depends(get_services),
):
    order = await s.checkout.refund_order(
        order_id, actor, (payload or {}).get("reason"),
        company_id=company_id,
    )
    return {"data": order_to_dict(order)}


# ----------------------------
# Webhook endpoint (inbound, provider -> us)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    s: Services = Depends(get_services),
):
    payload = await request.body()
    headers = dict(request.headers)
    async with timings.timeit("payments.webhook"):
        return await s.checkout.apply_payment_event(payload, headers)


# ----------------------------
# Webhook endpoints (outbound, us -> companies)
# ----------------------------
@app.post("/api/v1/companies/{company_id}/webhooks", status_code=201)
async def register_webhook(
    company_id: str,
    payload: dict,
    actor: str = Depends(actor_id),
    s: Services = Depends(get_services),
):
    _require(payload, "url", "events")
    ep, secret = await s.endpoints.register(
        company_id,
        url=payload["url"],
        events=payload["events"],
        description=payload.get("description"),
        created_by=actor,
    )
    await s.audit.record(company_id, actor, "webhook.created", "webhook",
                         ep.id, {"url": ep.url, "events": ep.events})
    # the only time the secret is shown
    return {"data": {**endpoint_to_dict(ep), "secret": secret}}


@app.get("/api/v1/companies/{company_id}/webhooks")
async def list_webhooks(
    company_id: str,
    s: Services = Depends(get_services),
):
    eps = await s.endpoints.list(company_id)
    return {"data": [endpoint_to_dict(ep) for ep in eps]}


@app.get("/api/v1/companies/{company_id}/webhooks/{webhook_id}")
async def get_webhook(
    company_id: str,
    webhook_id: str,
    s: Services = Depends(get_services),
):
    ep = await s.endpoints.require(webhook_id, company_id)
    return {"data": endpoint_to_dict(ep)}


@app.patch("/api/v1/companies/{company_id}/webhooks/{webhook_id}")
async def update_webhook(
    company_id: str,
    webhook_id: str,
    payload: dict,
    actor: str = Depends(actor_id),
    s: Services = Depends(get_services),
):
    enabled = payload.get("enabled")
    if enabled is not None and not isinstance(enabled, bool):
        raise ValidationError("enabled must be true or false")
    ep = await s.endpoints.update(
        webhook_id, company_id,
        url=payload.get("url"),
        description=payload.get("description"),
        events=payload.get("events"),
        enabled=enabled,
    )
    await s.audit.record(company_id, actor, "webhook.updated", "webhook",
                         ep.id, {"fields": sorted(payload)})
    return {"data": endpoint_to_dict(ep)}


@app.delete("/api/v1/companies/{company_id}/webhooks/{webhook_id}")
async def delete_webhook(
    company_id: str,
    webhook_id: str,
    actor: str = Depends(actor_id),
    s: Services = Depends(get_services),
):
    await s.endpoints.delete(webhook_id, company_id)
    await s.audit.record(company_id, actor, "webhook.deleted", "webhook",
                         webhook_id, {})
    return {"data": {"id": webhook_id, "deleted": True}}


@app.post("/api/v1/companies/{company_id}/webhooks/{webhook_id}/test")
async def test_webhook(
    company_id: str,
    webhook_id: str,
    s: Services = Depends(get_services),
):
    record = await s.dispatcher.test_trigger(company_id, webhook_id)
    return {"data": delivery_to_dict(record)}


@app.post("/api/v1/companies/{company_id}/webhooks/{webhook_id}/enable")
async def enable_webhook(
    company_id: str,
    webhook_id: str,
    actor: str = Depends(actor_id),
    s: Services = Depends(get_services),
):
    ep = await s.endpoints.re_enable(webhook_id, company_id)
    await s.audit.record(company_id, actor, "webhook.enabled", "webhook",
                         ep.id, {})
    return {"data": endpoint_to_dict(ep)}


@app.get("/api/v1/companies/{company_id}/webhooks/{webhook_id}/logs")
async def webhook_logs(
    company_id: str,
    webhook_id: str,
    success: Optional[bool] = None,
    event: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    s: Services = Depends(get_services),
):
    await s.endpoints.require(webhook_id, company_id)
    return await s.deliveries.list(
        webhook_id, success=success, event=event, search=search,
        limit=limit, offset=offset,
    )


# ----------------------------
# Members: abuse guards only
# ----------------------------
@app.post("/api/v1/companies/{company_id}/members/{user_id}/invitations")
async def invite_member(
    company_id: str,
    user_id: str,
    s: Services = Depends(get_services),
):
    rl = await check_invitation(s.limiter, company_id, user_id)
    return ORJSONResponse({"data": {"allowed": True,
                                    "remaining": rl.remaining}},
                          headers=rl_headers(rl))


@app.post("/api/v1/companies/{company_id}/members/{membership_id}/resend")
async def resend_invitation(
    company_id: str,
    membership_id: str,
    s: Services = Depends(get_services),
):
    rl = await check_resend(s.limiter, membership_id)
    return ORJSONResponse({"data": {"allowed": True,
                                    "remaining": rl.remaining}},
                          headers=rl_headers(rl))


# ----------------------------
# Admin
# ----------------------------
@app.get("/api/admin/timings")
async def admin_timings():
    return {"items": timings.snapshot()}


@app.get("/api/v1/companies/{company_id}/audit-logs")
async def audit_logs(
    company_id: str,
    limit: int = 100,
    s: Services = Depends(get_services),
):
    return {"data": await s.audit.list(company_id, max(1, min(limit, 500)))}
