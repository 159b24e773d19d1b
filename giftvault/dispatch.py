# dispatch.py
"""
Webhook dispatcher.

trigger() returns as soon as the event is queued. Each endpoint owns a FIFO
queue drained by its own worker task, so one endpoint sees events in trigger
order while different endpoints are delivered in parallel. A worker is
started on demand and exits once its queue is empty.

Each delivery attempt is recorded, and feeds the endpoint's circuit breaker:
after `failure_threshold` consecutive failures the endpoint is set to
failed/disabled and stays that way until an operator re-enables it.
"""
from __future__ import annotations
import asyncio
import hashlib
import hmac
import itertools
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

import httpx
import orjson
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from . import config
from .errors import ValidationError
from .helpers import new_id
from .infra.timings import timeit
from .model.audit import AuditTrail
from .model.db import WebhookDelivery, WebhookEndpoint
from .model.webhook import EVENT_TYPES, DeliveryLog, EndpointStore

log = structlog.get_logger(__name__)


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign(secret, body), signature or "")


def _should_retry(record: Optional[WebhookDelivery]) -> bool:
    # None means the endpoint was switched off; nothing left to retry
    return record is not None and not record.success


def build_event(company_id: str, event: str,
                data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": new_id("evt"),
        "event": event,
        "company_id": company_id,
        "created_at": int(time.time()),
        "data": data,
    }


class WebhookDispatcher:
    def __init__(
        self,
        endpoints: EndpointStore,
        deliveries: DeliveryLog,
        http: httpx.AsyncClient,
        audit: Optional[AuditTrail] = None,
        *,
        timeout: float = config.WEBHOOK_TIMEOUT_SECONDS,
        failure_threshold: int = config.WEBHOOK_FAILURE_THRESHOLD,
        max_attempts: int = config.WEBHOOK_MAX_ATTEMPTS,
        retry_base: float = config.WEBHOOK_RETRY_BASE_SECONDS,
        user_agent: str = config.WEBHOOK_USER_AGENT,
    ) -> None:
        self.endpoints = endpoints
        self.deliveries = deliveries
        self.http = http
        self.audit = audit
        self.timeout = timeout
        self.failure_threshold = failure_threshold
        self.max_attempts = max(1, max_attempts)
        self.retry_base = retry_base
        self.user_agent = user_agent

        self._queues: Dict[str, Deque[Dict[str, Any]]] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._closed = False

    # ----------------------------
    # Public API
    # ----------------------------
    async def trigger(self, company_id: str, event: str,
                      data: Dict[str, Any]) -> Dict[str, Any]:
        if event not in EVENT_TYPES:
            raise ValidationError(f"unknown event type: {event}")
        if self._closed:
            raise RuntimeError("dispatcher is closed")
        envelope = build_event(company_id, event, data)
        targets = await self.endpoints.subscribed(company_id, event)
        for ep in targets:
            self._enqueue(ep.id, envelope)
        log.info("webhook.triggered", event_type=event,
                 event_id=envelope["id"], company_id=company_id,
                 endpoints=len(targets))
        return {"event": envelope, "endpoints": len(targets)}

    async def emit(self, company_id: str, event: str,
                   data: Dict[str, Any]) -> None:
        """Fire-and-forget trigger for business flows: a dispatch problem is
        logged and never surfaces into the caller."""
        try:
            await self.trigger(company_id, event, data)
        except Exception:
            log.exception("webhook.trigger_failed", event_type=event,
                          company_id=company_id)

    async def test_trigger(self, company_id: str,
                           endpoint_id: str) -> WebhookDelivery:
        # bypasses queue and enabled check; a single synchronous attempt
        ep = await self.endpoints.require(endpoint_id, company_id)
        event = (ep.events or ["order.created"])[0]
        envelope = build_event(company_id, event, {
            "test": True,
            "message": "This is a test webhook event",
            "order_id": "order_test_123",
            "total": 10000,
            "currency": "USD",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        return await self._attempt(ep, envelope, orjson.dumps(envelope), 1)

    async def prune_deliveries(self, older_than: Optional[float] = None,
                               retention_days: int =
                               config.WEBHOOK_LOG_RETENTION_DAYS) -> int:
        if older_than is None:
            older_than = time.time() - retention_days * 86400
        n = await self.deliveries.prune(older_than)
        if n:
            log.info("webhook.deliveries_pruned", count=n)
        return n

    async def drain(self) -> None:
        # workers may enqueue nothing new themselves; loop until idle
        while True:
            tasks = [t for t in self._workers.values() if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        self._closed = True
        tasks = list(self._workers.values())
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()

    def pending(self) -> int:
        return sum(len(q) for q in self._queues.values())

    # ----------------------------
    # Queueing
    # ----------------------------
    def _enqueue(self, endpoint_id: str, envelope: Dict[str, Any]) -> None:
        q = self._queues.setdefault(endpoint_id, deque())
        q.append(envelope)
        task = self._workers.get(endpoint_id)
        if task is None or task.done():
            self._workers[endpoint_id] = asyncio.create_task(
                self._run(endpoint_id)
            )

    async def _run(self, endpoint_id: str) -> None:
        q = self._queues[endpoint_id]
        while q:
            envelope = q[0]
            try:
                await self.deliver(endpoint_id, envelope)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("webhook.worker_error",
                              endpoint_id=endpoint_id,
                              event_id=envelope["id"])
            finally:
                if q:
                    q.popleft()
        # no await between the empty check and here: a concurrent _enqueue
        # either saw this task running with a non-empty queue, or starts
        # a fresh one
        self._workers.pop(endpoint_id, None)
        self._queues.pop(endpoint_id, None)

    # ----------------------------
    # Delivery
    # ----------------------------
    async def deliver(self, endpoint_id: str,
                      envelope: Dict[str, Any]) -> Optional[WebhookDelivery]:
        """Deliver one envelope, retrying failed attempts with exponential
        backoff. Returns the last attempt's record, or None when the
        endpoint was disabled (or gone) before an attempt could be made."""
        body = orjson.dumps(envelope)
        attempts = itertools.count(1)

        async def attempt_once() -> Optional[WebhookDelivery]:
            n = next(attempts)
            # re-read: the breaker may have tripped between attempts
            ep = await self.endpoints.get(endpoint_id)
            if ep is None or not ep.enabled or ep.status != "active":
                log.info("webhook.skipped", endpoint_id=endpoint_id,
                         event_id=envelope["id"], attempt=n)
                return None
            return await self._attempt(ep, envelope, body, n)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_base),
            retry=retry_if_result(_should_retry),
            retry_error_callback=lambda rs: rs.outcome.result(),
            before_sleep=lambda rs: log.info(
                "webhook.retrying",
                endpoint_id=endpoint_id,
                event_id=envelope["id"],
                attempt=rs.attempt_number,
                sleep_seconds=rs.next_action.sleep,
            ),
        )
        return await retrying(attempt_once)

    async def _attempt(self, ep: WebhookEndpoint, envelope: Dict[str, Any],
                       body: bytes, attempt: int) -> WebhookDelivery:
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign(ep.secret, body),
            "X-Webhook-Event": envelope["event"],
            "X-Webhook-Id": envelope["id"],
            "User-Agent": self.user_agent,
        }
        status: Optional[int] = None
        resp_body: Optional[str] = None
        error: Optional[str] = None
        t0 = time.perf_counter()
        try:
            async with timeit("webhook.post"):
                r = await self.http.post(ep.url, content=body,
                                         headers=headers,
                                         timeout=self.timeout)
            status = r.status_code
            resp_body = r.text
            if not 200 <= status < 300:
                error = f"HTTP {status}"
        except httpx.TimeoutException:
            error = f"timeout after {self.timeout:g}s"
        except httpx.HTTPError as e:
            error = str(e) or e.__class__.__name__
        duration_ms = int((time.perf_counter() - t0) * 1000)
        ok = error is None

        record = await self.deliveries.record(
            ep,
            event_id=envelope["id"],
            event=envelope["event"],
            payload=body.decode(),
            attempt=attempt,
            success=ok,
            duration_ms=duration_ms,
            response_status=status,
            response_body=resp_body,
            error_message=error,
        )

        if ok:
            await self.endpoints.record_success(ep.id)
            log.info("webhook.delivered", endpoint_id=ep.id,
                     event_id=envelope["id"], status=status,
                     duration_ms=duration_ms)
            return record

        tripped = await self.endpoints.record_failure(
            ep.id, error, self.failure_threshold
        )
        log.warning("webhook.delivery_failed", endpoint_id=ep.id,
                    event_id=envelope["id"], attempt=attempt, error=error)
        if tripped:
            log.warning("webhook.disabled", endpoint_id=ep.id,
                        threshold=self.failure_threshold)
            if self.audit is not None:
                await self.audit.record(
                    ep.company_id, "system", "webhook.disabled", "webhook",
                    ep.id, {"threshold": self.failure_threshold,
                            "reason": error},
                )
        return record
