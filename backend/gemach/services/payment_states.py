# Overview: Status vocabularies and allowed transitions for payments and pay-later card resolution.

from __future__ import annotations

from ..errors import InvalidStateError


# =============================================================================
# PAYMENT KINDS / STATUSES (CONSTANTS)
# =============================================================================

KIND_CHARGE = "charge"
KIND_REFUND = "refund"
KIND_HOLD = "hold"

STATUS_PENDING = "pending"
STATUS_CONFIRMING = "confirming"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"
STATUS_PENDING_RETRY = "pending_retry"

VALID_PAYMENT_STATUSES = [
    STATUS_PENDING,
    STATUS_CONFIRMING,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_REFUNDED,
    STATUS_PENDING_RETRY,
]

# Awaiting a human (cash) or the provider
OPEN_STATUSES = (STATUS_PENDING, STATUS_CONFIRMING)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_REFUNDED)

PAYMENT_TRANSITIONS = {
    STATUS_PENDING: {STATUS_CONFIRMING, STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING_RETRY},
    STATUS_CONFIRMING: {STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING_RETRY},
    STATUS_PENDING_RETRY: {STATUS_PENDING, STATUS_CONFIRMING, STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING_RETRY},
    STATUS_COMPLETED: {STATUS_REFUNDED},
    STATUS_FAILED: set(),
    STATUS_REFUNDED: set(),
}


def can_transition_payment(current: str, new: str) -> bool:
    return new in PAYMENT_TRANSITIONS.get(current, set())


def require_payment_transition(current: str, new: str) -> None:
    if not can_transition_payment(current, new):
        raise InvalidStateError(f"Invalid payment state transition: {current} -> {new}")


# =============================================================================
# PAY-LATER (SAVED CARD) SUB-STATES
# =============================================================================

PL_REQUEST_CREATED = "REQUEST_CREATED"
PL_CARD_SETUP_PENDING = "CARD_SETUP_PENDING"
PL_CARD_SETUP_COMPLETE = "CARD_SETUP_COMPLETE"
PL_APPROVED = "APPROVED"
PL_CHARGE_ATTEMPTED = "CHARGE_ATTEMPTED"
PL_CHARGED = "CHARGED"
PL_CHARGE_REQUIRES_ACTION = "CHARGE_REQUIRES_ACTION"
PL_CHARGE_FAILED = "CHARGE_FAILED"
PL_DECLINED = "DECLINED"
PL_EXPIRED = "EXPIRED"

VALID_PAY_LATER_STATUSES = [
    PL_REQUEST_CREATED,
    PL_CARD_SETUP_PENDING,
    PL_CARD_SETUP_COMPLETE,
    PL_APPROVED,
    PL_CHARGE_ATTEMPTED,
    PL_CHARGED,
    PL_CHARGE_REQUIRES_ACTION,
    PL_CHARGE_FAILED,
    PL_DECLINED,
    PL_EXPIRED,
]

# Resolved: the card was charged or the hold was released
PAY_LATER_TERMINAL = (PL_CHARGED, PL_DECLINED, PL_EXPIRED)

CHARGEABLE_STATUSES = (PL_CARD_SETUP_COMPLETE, PL_APPROVED, PL_CHARGE_REQUIRES_ACTION)
DECLINABLE_STATUSES = (
    PL_REQUEST_CREATED,
    PL_CARD_SETUP_PENDING,
    PL_CARD_SETUP_COMPLETE,
    PL_APPROVED,
    PL_CHARGE_REQUIRES_ACTION,
    PL_CHARGE_FAILED,
)


def is_pending_card_resolution(pay_later_status: str | None) -> bool:
    return pay_later_status is not None and pay_later_status not in PAY_LATER_TERMINAL
