from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base error. Carries a stable code and the HTTP status it maps to."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class NotFound(AppError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, id: Optional[str] = None) -> None:
        super().__init__(f"{resource} not found", {"id": id} if id else None)
        self.resource = resource


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InsufficientInventory(AppError):
    code = "INSUFFICIENT_INVENTORY"
    status_code = 409

    def __init__(self, listing_id: str, denomination: int, requested: int,
                 available: int) -> None:
        super().__init__(
            f"Not enough inventory. Requested {requested}, "
            f"only {available} available",
            {
                "listing_id": listing_id,
                "denomination": denomination,
                "requested": requested,
                "available": available,
            },
        )
        self.requested = requested
        self.available = available


class InvalidStateTransition(AppError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 409


class TooManyRequests(AppError):
    code = "TOO_MANY_REQUESTS"
    status_code = 429

    def __init__(self, message: str, limit: int, reset_at: float) -> None:
        super().__init__(message, {"limit": limit, "reset_at": reset_at})
        self.limit = limit
        self.reset_at = reset_at


class ExternalServiceError(AppError):
    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service} error: {message}", {"service": service})
        self.service = service
