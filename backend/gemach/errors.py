# Overview: Domain error taxonomy shared by services and routes.

"""
Deposit ledger errors.

Services raise these; routes translate them into JSON responses using
`http_status`. Anything that is not a DepositError is an unexpected failure
and is logged and returned as a generic 500.
"""

from __future__ import annotations


class DepositError(Exception):
    """Base class for expected domain failures."""

    http_status = 400
    code = "DEPOSIT_ERROR"

    def public_message(self) -> str:
        return str(self)

    def to_dict(self) -> dict:
        return {"error": self.public_message(), "code": self.code}


class NotFoundError(DepositError):
    http_status = 404
    code = "NOT_FOUND"


class ForbiddenError(DepositError):
    http_status = 403
    code = "FORBIDDEN"


class InvalidStateError(DepositError):
    """Operation is not valid from the entity's current state."""
    http_status = 409
    code = "INVALID_STATE"


class AlreadyReturnedError(InvalidStateError):
    code = "ALREADY_RETURNED"


class InvalidArgumentError(DepositError):
    http_status = 400
    code = "INVALID_ARGUMENT"


class RefundExceedsDepositError(InvalidArgumentError):
    code = "REFUND_EXCEEDS_DEPOSIT"


class NoChargeToRefundError(DepositError):
    http_status = 409
    code = "NO_CHARGE_TO_REFUND"


class InsufficientStockError(DepositError):
    http_status = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, location_id: int, color: str, requested: int, available: int):
        self.location_id = location_id
        self.color = color
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient {color} stock at location {location_id}: "
            f"requested {requested}, available {available}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"color": self.color, "available": self.available})
        return data


class UnsupportedMethodError(DepositError):
    http_status = 400
    code = "UNSUPPORTED_METHOD"


class LocationInactiveError(DepositError):
    http_status = 409
    code = "LOCATION_INACTIVE"


class ProviderError(DepositError):
    """
    Wraps any failure raised by an external payment processor.

    The provider's own message and payload are kept for logging only;
    callers get a generic message.
    """
    http_status = 502
    code = "PROVIDER_ERROR"

    def __init__(self, provider: str, message: str, *, provider_code: str | None = None, payload: dict | None = None):
        self.provider = provider
        self.provider_code = provider_code
        self.payload = payload or {}
        super().__init__(f"{provider}: {message}")

    def public_message(self) -> str:
        return "Payment provider request failed"


class ImmutableRecordError(DepositError):
    """Raised when code attempts to update or delete an append-only row."""
    http_status = 500
    code = "IMMUTABLE_RECORD"
