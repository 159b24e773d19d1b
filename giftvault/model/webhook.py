# model/webhook.py
"""
Webhook endpoints and their delivery log.

Endpoint health counters are updated with single UPDATE statements so
concurrent deliveries cannot lose increments. Secrets go in and out through
the ORM (EncryptedString) and are never part of a serialized endpoint.
"""
from __future__ import annotations
import secrets
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from sqlalchemy import delete, func, or_, select, text

from ..errors import NotFound, ValidationError
from ..helpers import new_id, now_ts, to_iso
from ..infra.sql import Gated
from .db import WebhookDelivery, WebhookEndpoint

EVENT_TYPES = (
    "order.created",
    "order.paid",
    "order.fulfilled",
    "order.fulfillment_failed",
    "order.failed",
    "order.refunded",
    "order.disputed",
    "inventory.low",
    "inventory.out",
    "customer.created",
)

RESPONSE_BODY_LIMIT = 1000


def new_secret() -> str:
    return "whsec_" + secrets.token_hex(24)


def _check_url(url: str) -> str:
    p = urlparse(url or "")
    if p.scheme not in ("http", "https") or not p.netloc:
        raise ValidationError("webhook url must be an absolute http(s) URL")
    return url


def _check_events(events: Sequence[str]) -> List[str]:
    if not events:
        raise ValidationError("subscribe to at least one event")
    unknown = [e for e in events if e not in EVENT_TYPES]
    if unknown:
        raise ValidationError(f"unknown event types: {', '.join(unknown)}")
    # keep caller order, drop duplicates
    return list(dict.fromkeys(events))


def endpoint_to_dict(ep: WebhookEndpoint) -> Dict[str, Any]:
    return {
        "id": ep.id,
        "company_id": ep.company_id,
        "url": ep.url,
        "description": ep.description,
        "events": list(ep.events or []),
        "enabled": ep.enabled,
        "status": ep.status,
        "consecutive_failures": ep.consecutive_failures,
        "success_count": ep.success_count,
        "failure_count": ep.failure_count,
        "last_triggered_at": to_iso(ep.last_triggered_at),
        "last_failure_at": to_iso(ep.last_failure_at),
        "last_failure_reason": ep.last_failure_reason,
        "created_by": ep.created_by,
        "created_at": to_iso(ep.created_at),
    }


def delivery_to_dict(d: WebhookDelivery) -> Dict[str, Any]:
    return {
        "id": d.id,
        "endpoint_id": d.endpoint_id,
        "event_id": d.event_id,
        "event": d.event,
        "url": d.url,
        "attempt": d.attempt,
        "response_status": d.response_status,
        "response_body": d.response_body,
        "success": d.success,
        "error_message": d.error_message,
        "duration_ms": d.duration_ms,
        "created_at": to_iso(d.created_at),
    }


# ----------------------------
# Endpoints
# ----------------------------
SQL_RECORD_SUCCESS = r"""
UPDATE webhook_endpoints
SET consecutive_failures=0,
    success_count=success_count + 1,
    last_triggered_at=:now,
    status=CASE WHEN status='failed' THEN 'active' ELSE status END
WHERE id=:id
"""

SQL_RECORD_FAILURE = r"""
UPDATE webhook_endpoints
SET consecutive_failures=consecutive_failures + 1,
    failure_count=failure_count + 1,
    last_triggered_at=:now,
    last_failure_at=:now,
    last_failure_reason=:reason
WHERE id=:id
"""

SQL_TRIP = r"""
UPDATE webhook_endpoints
SET status='failed', enabled=:off
WHERE id=:id AND consecutive_failures >= :threshold
  AND (status <> 'failed' OR enabled = :on)
"""


class EndpointStore:
    def __init__(self, SessionAsync, gated: Gated) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated

    async def register(
        self,
        company_id: str,
        *,
        url: str,
        events: Sequence[str],
        created_by: str,
        description: Optional[str] = None,
    ) -> Tuple[WebhookEndpoint, str]:
        secret = new_secret()
        ep = WebhookEndpoint(
            id=new_id("whk"),
            company_id=company_id,
            url=_check_url(url),
            description=description,
            secret=secret,
            events=_check_events(events),
            enabled=True,
            status="active",
            consecutive_failures=0,
            success_count=0,
            failure_count=0,
            created_by=created_by,
            created_at=now_ts(),
        )
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    s.add(ep)
        return ep, secret

    async def get(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        async with self.gated():
            async with self.SessionAsync() as s:
                return await s.get(WebhookEndpoint, endpoint_id)

    async def require(self, endpoint_id: str,
                      company_id: Optional[str] = None) -> WebhookEndpoint:
        ep = await self.get(endpoint_id)
        if ep is None or (
                company_id is not None and ep.company_id != company_id):
            raise NotFound("Webhook", endpoint_id)
        return ep

    async def list(self, company_id: str) -> List[WebhookEndpoint]:
        async with self.gated():
            async with self.SessionAsync() as s:
                return list((await s.execute(
                    select(WebhookEndpoint)
                    .where(WebhookEndpoint.company_id == company_id)
                    .order_by(WebhookEndpoint.created_at)
                )).scalars().all())

    async def subscribed(self, company_id: str,
                         event: str) -> List[WebhookEndpoint]:
        async with self.gated():
            async with self.SessionAsync() as s:
                rows = (await s.execute(
                    select(WebhookEndpoint)
                    .where(
                        WebhookEndpoint.company_id == company_id,
                        WebhookEndpoint.enabled.is_(True),
                        WebhookEndpoint.status == "active",
                    )
                    .order_by(WebhookEndpoint.created_at)
                )).scalars().all()
        # JSON membership is not portable across dialects; filter here
        return [ep for ep in rows if event in (ep.events or [])]

    async def update(
        self,
        endpoint_id: str,
        company_id: str,
        *,
        url: Optional[str] = None,
        description: Optional[str] = None,
        events: Optional[Sequence[str]] = None,
        enabled: Optional[bool] = None,
    ) -> WebhookEndpoint:
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    ep = await s.get(WebhookEndpoint, endpoint_id)
                    if ep is None or ep.company_id != company_id:
                        raise NotFound("Webhook", endpoint_id)
                    if url is not None:
                        ep.url = _check_url(url)
                    if description is not None:
                        ep.description = description
                    if events is not None:
                        ep.events = _check_events(events)
                    if enabled is True:
                        ep.enabled = True
                        ep.status = "active"
                        ep.consecutive_failures = 0
                    elif enabled is False:
                        ep.enabled = False
                        ep.status = "disabled"
        return ep

    async def re_enable(self, endpoint_id: str,
                        company_id: str) -> WebhookEndpoint:
        return await self.update(endpoint_id, company_id, enabled=True)

    async def delete(self, endpoint_id: str, company_id: str) -> None:
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    res = await s.execute(
                        delete(WebhookEndpoint).where(
                            WebhookEndpoint.id == endpoint_id,
                            WebhookEndpoint.company_id == company_id,
                        )
                    )
        if res.rowcount != 1:
            raise NotFound("Webhook", endpoint_id)

    async def record_success(self, endpoint_id: str) -> None:
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    await s.execute(text(SQL_RECORD_SUCCESS),
                                    {"id": endpoint_id, "now": now_ts()})

    async def record_failure(self, endpoint_id: str, reason: str,
                             threshold: int) -> bool:
        """Count a failed delivery. True when this failure tripped the
        breaker (endpoint is now failed and disabled)."""
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    await s.execute(text(SQL_RECORD_FAILURE), {
                        "id": endpoint_id, "now": now_ts(),
                        "reason": reason[:500],
                    })
                    res = await s.execute(text(SQL_TRIP), {
                        "id": endpoint_id, "threshold": threshold,
                        "on": True, "off": False,
                    })
        return res.rowcount == 1


# ----------------------------
# Delivery log
# ----------------------------
class DeliveryLog:
    def __init__(self, SessionAsync, gated: Gated) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated

    async def record(
        self,
        endpoint: WebhookEndpoint,
        *,
        event_id: str,
        event: str,
        payload: str,
        attempt: int,
        success: bool,
        duration_ms: int,
        response_status: Optional[int] = None,
        response_body: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> WebhookDelivery:
        row = WebhookDelivery(
            endpoint_id=endpoint.id,
            company_id=endpoint.company_id,
            event_id=event_id,
            event=event,
            url=endpoint.url,
            payload=payload,
            attempt=attempt,
            response_status=response_status,
            response_body=(response_body or "")[:RESPONSE_BODY_LIMIT] or None,
            success=success,
            error_message=error_message,
            duration_ms=duration_ms,
            created_at=now_ts(),
        )
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    s.add(row)
        return row

    async def list(
        self,
        endpoint_id: str,
        *,
        success: Optional[bool] = None,
        event: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        conds = [WebhookDelivery.endpoint_id == endpoint_id]
        if success is not None:
            conds.append(WebhookDelivery.success.is_(success))
        if event:
            conds.append(WebhookDelivery.event == event)
        if search:
            like = f"%{search.lower()}%"
            conds.append(or_(
                func.lower(WebhookDelivery.event).like(like),
                func.lower(WebhookDelivery.error_message).like(like),
                func.lower(WebhookDelivery.url).like(like),
            ))
        limit = max(1, min(limit, 200))
        offset = max(0, offset)
        async with self.gated():
            async with self.SessionAsync() as s:
                total = (await s.execute(
                    select(func.count()).select_from(WebhookDelivery)
                    .where(*conds)
                )).scalar_one()
                rows = (await s.execute(
                    select(WebhookDelivery)
                    .where(*conds)
                    .order_by(WebhookDelivery.created_at.desc(),
                              WebhookDelivery.id.desc())
                    .limit(limit)
                    .offset(offset)
                )).scalars().all()
        return {
            "data": [delivery_to_dict(r) for r in rows],
            "meta": {
                "total": int(total),
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(rows) < total,
            },
        }

    async def prune(self, older_than: float) -> int:
        async with self.gated():
            async with self.SessionAsync() as s:
                async with s.begin():
                    res = await s.execute(
                        delete(WebhookDelivery)
                        .where(WebhookDelivery.created_at < older_than)
                    )
        return res.rowcount
