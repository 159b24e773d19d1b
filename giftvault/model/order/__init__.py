# model/order/__init__.py
from . import state
from .state import (
    can_be_fulfilled, can_be_refunded, check_payment, check_fulfillment,
    check_reopen, require_fulfillable, require_refundable,
    PAYMENT_METHODS, PAYMENT_STATUSES, FULFILLMENT_STATUSES,
)
from .store import OrderStore, decode_codes

__all__ = [
    "state", "OrderStore", "decode_codes",
    "can_be_fulfilled", "can_be_refunded", "check_payment",
    "check_fulfillment", "check_reopen", "require_fulfillable",
    "require_refundable",
    "PAYMENT_METHODS", "PAYMENT_STATUSES", "FULFILLMENT_STATUSES",
]
