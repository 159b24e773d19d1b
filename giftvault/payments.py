from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple, TypedDict
import base64
import hashlib
import hmac
import time
import uuid

import orjson

from . import config
from .errors import ExternalServiceError, ValidationError

# provider verdicts, as returned by verify_payment()
PAY_COMPLETED = "completed"
PAY_FAILED = "failed"
PAY_PENDING = "pending"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


class PaymentAdapter(ABC):
    name: str

    @abstractmethod
    def create_session(self, order_id: str, amount: int,
                       currency: str) -> CreateSessionResult: ...

    # "completed" | "failed" | "pending"
    @abstractmethod
    async def verify_payment(self, reference: str,
                             token: Optional[str] = None) -> str: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled" | "disputed"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment_session_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...


# ----------------------------
# MockPay implementation
# ----------------------------
_KIND_TO_STATUS = {
    "succeeded": PAY_COMPLETED,
    "failed": PAY_FAILED,
    "canceled": PAY_FAILED,
}


class MockPay(PaymentAdapter):
    """In-process provider. A session is settled either by a token passed to
    verify_payment ("succeeded" | "failed" | "canceled") or earlier through
    settle(); anything else is a provider error."""

    name = "mock"

    def __init__(self, secret: str = config.MOCK_SECRET) -> None:
        self.secret = secret
        self._outcomes: Dict[str, str] = {}

    def create_session(self, order_id: str, amount: int,
                       currency: str) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        return {"payment_session_id": psid,
                "redirect_url": f"/mockpay/{psid}"}

    def settle(self, reference: str, kind: str) -> None:
        if kind not in _KIND_TO_STATUS:
            raise ValidationError(f"invalid kind: {kind}")
        self._outcomes[reference] = kind

    async def verify_payment(self, reference: str,
                             token: Optional[str] = None) -> str:
        kind = token or self._outcomes.get(reference)
        if kind is None:
            return PAY_PENDING
        status = _KIND_TO_STATUS.get(kind)
        if status is None:
            raise ExternalServiceError("mockpay", f"unknown token {kind!r}")
        return status

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, kind: str, reference: str,
                    order_id: str) -> bytes:
        return orjson.dumps({
            "type": f"payment.{kind}",
            "payment_session_id": reference,
            "order_id": order_id,
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        })

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise ValidationError("Invalid signature")
        try:
            return orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise ValidationError("Invalid JSON")

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("payment_session_id", ""),
                event.get("idempotency_key")
        )
