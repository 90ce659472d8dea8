# Overview: Borrower/operator notification hook. Delivery (email) lives outside this service; we log the intent.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Transaction
from . import audit_service
from .authorization import Actor


DEPOSIT_CONFIRMED = "deposit_confirmed"
DEPOSIT_FAILED = "deposit_failed"
DEPOSIT_REFUNDED = "deposit_refunded"
ITEM_RETURNED = "item_returned"
CARD_CHARGED = "card_charged"
CARD_ACTION_REQUIRED = "card_action_required"
MANUAL_REVIEW_REQUIRED = "manual_review_required"


def notify(event: str, transaction: Transaction, **details) -> None:
    """Hand a notification to the delivery layer."""
    recipient = transaction.borrower_email or transaction.borrower_phone
    current_app.logger.info(
        "notification %s for transaction %s (location %s) to %s: %s",
        event,
        transaction.id,
        transaction.location_id,
        recipient or "<no contact>",
        details,
    )


def deliver(
    event: str,
    transaction: Transaction,
    *,
    actor: Actor | None = None,
    actor_type: str | None = None,
    **details,
) -> bool:
    """
    Run a notification as a post-commit side effect.

    The money movement is already committed when this runs, so a failure is
    logged and audited, never raised. Either way exactly one audit entry is
    written per delivery attempt.
    """
    transaction_id = transaction.id
    try:
        notify(event, transaction, **details)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.warning(
            "notification %s for transaction %s failed: %s", event, transaction_id, exc
        )
        audit_service.record(
            action="side_effect_failed",
            entity_type="transaction",
            entity_id=transaction_id,
            actor=actor,
            actor_type=actor_type,
            metadata={"effect": event, "error": str(exc)},
        )
        db.session.commit()
        return False

    audit_service.record(
        action="notification_sent",
        entity_type="transaction",
        entity_id=transaction_id,
        actor=actor,
        actor_type=actor_type,
        metadata={"effect": event},
    )
    db.session.commit()
    return True
