# model/order/state.py
"""
Order lifecycle rules.

An order moves along two axes:

    payment:      pending -> processing -> completed | failed
                  pending -> failed                  (abandoned / declined)
                  completed -> refunded | disputed
    fulfillment:  pending -> fulfilled | failed
                  failed -> pending                  (operator reopen only)

Stores re-check these rules at write time with conditional updates; the
functions here give callers the error before touching storage.
"""
from __future__ import annotations
from typing import Any, Dict, FrozenSet

from ...errors import InvalidStateTransition

# payment axis
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
REFUNDED = "refunded"
DISPUTED = "disputed"

# fulfillment axis
F_PENDING = "pending"
F_FULFILLED = "fulfilled"
F_FAILED = "failed"

PAYMENT_STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED, REFUNDED,
                    DISPUTED)
FULFILLMENT_STATUSES = (F_PENDING, F_FULFILLED, F_FAILED)
PAYMENT_METHODS = ("stripe", "paypal", "crypto", "pgpay", "mock")

PAYMENT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({PROCESSING, FAILED}),
    PROCESSING: frozenset({COMPLETED, FAILED}),
    COMPLETED: frozenset({REFUNDED, DISPUTED}),
    FAILED: frozenset(),
    REFUNDED: frozenset(),
    DISPUTED: frozenset(),
}

FULFILLMENT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    F_PENDING: frozenset({F_FULFILLED, F_FAILED}),
    F_FULFILLED: frozenset(),
    # reopen goes through reopen_fulfillment, never a plain transition
    F_FAILED: frozenset(),
}


def can_be_fulfilled(order: Any) -> bool:
    return (order.payment_status == COMPLETED
            and order.fulfillment_status == F_PENDING)


def can_be_refunded(order: Any) -> bool:
    return (order.payment_status == COMPLETED
            and order.fulfillment_status != F_FULFILLED)


def check_payment(current: str, target: str) -> None:
    if target not in PAYMENT_TRANSITIONS.get(current, ()):
        raise InvalidStateTransition(
            f"payment cannot move from {current} to {target}"
        )


def check_fulfillment(current: str, target: str) -> None:
    if target not in FULFILLMENT_TRANSITIONS.get(current, ()):
        raise InvalidStateTransition(
            f"fulfillment cannot move from {current} to {target}"
        )


def check_reopen(current: str) -> None:
    if current != F_FAILED:
        raise InvalidStateTransition(
            f"only failed fulfillments can be reopened (is {current})"
        )


def require_fulfillable(order: Any) -> None:
    if order.payment_status != COMPLETED:
        raise InvalidStateTransition(
            f"order cannot be fulfilled: payment is {order.payment_status}"
        )
    if order.fulfillment_status != F_PENDING:
        raise InvalidStateTransition(
            "order cannot be fulfilled: fulfillment is "
            f"{order.fulfillment_status}"
        )


def require_refundable(order: Any) -> None:
    if not can_be_refunded(order):
        raise InvalidStateTransition(
            f"order cannot be refunded (payment={order.payment_status}, "
            f"fulfillment={order.fulfillment_status})"
        )
