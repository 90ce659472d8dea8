# Overview: Reconciles provider-reported payment status (webhooks, polling, retry sweep) into Payment rows.

"""
Payment Status Sync

WHY: Card and PayPal deposits finish asynchronously. Whatever reports the
outcome (webhook, poll, retry sweep) goes through process_status_update so
all three apply the same transition and the same side effects.

INVARIANTS:
- Dedupe before mutating: an event id already stored in webhook_events is a
  no-op. The event row is inserted in the same DB transaction as the
  status change, so a crash cannot record one without the other.
- Terminal payments (completed, failed, refunded) never move again.
- Retryable failures go to pending_retry with next_retry_at =
  now + base_minutes * attempt, at most PAYMENT_RETRY_MAX_ATTEMPTS times.
  Retry state lives in the payments table; `flask payments retry-due`
  sweeps it, so nothing is lost on restart.
- Exhausted or terminal failures are flagged for manual review in the
  transaction notes. Never dropped silently.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import ProviderError
from ..extensions import db
from ..models import Payment, WebhookEvent
from gemach.time_utils import utcnow
from . import audit_service, notification_service
from .audit_service import ACTOR_SYSTEM, ACTOR_WEBHOOK
from .concurrency import lock_for_update, run_with_retry
from .deposit_service import apply_completion
from .payment_states import (
    KIND_CHARGE,
    OPEN_STATUSES,
    STATUS_COMPLETED,
    STATUS_CONFIRMING,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PENDING_RETRY,
    TERMINAL_STATUSES,
    can_transition_payment,
)
from .providers import get_provider
from .transaction_service import append_note


RETRYABLE_REASONS = (
    "insufficient_funds",
    "temporary_failure",
    "network_error",
    "timeout",
    "processing_error",
)


@dataclass
class SyncOutcome:
    payment_id: int | None
    previous_status: str | None
    status: str | None
    applied: bool = False
    duplicate: bool = False
    retry_scheduled: bool = False
    manual_review: bool = False

    def to_dict(self) -> dict:
        return {
            "payment_id": self.payment_id,
            "previous_status": self.previous_status,
            "status": self.status,
            "applied": self.applied,
            "duplicate": self.duplicate,
            "retry_scheduled": self.retry_scheduled,
            "manual_review": self.manual_review,
        }


def map_external_status(external_status: str | None) -> str:
    """Provider vocabulary -> completed / failed / confirming / pending."""
    value = (external_status or "").strip().lower()
    if value in ("accepted", "succeeded", "completed"):
        return STATUS_COMPLETED
    if value in ("declined", "failed", "rejected", "denied"):
        return STATUS_FAILED
    if value in ("pending", "processing"):
        return STATUS_CONFIRMING
    return STATUS_PENDING


def is_retryable_failure(reason: str | None) -> bool:
    value = (reason or "").lower()
    return any(retryable in value for retryable in RETRYABLE_REASONS)


def _failure_reason(provider_data: dict) -> str:
    return str(
        provider_data.get("reason")
        or provider_data.get("error_code")
        or provider_data.get("failure_reason")
        or "Unknown error"
    )


def _record_event(provider: str, event_id: str, event_type: str | None, external_payment_id: str, source: str, payload: dict) -> bool:
    """Insert the dedupe row. False if this event was already processed."""
    try:
        with db.session.begin_nested():
            db.session.add(WebhookEvent(
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                external_payment_id=external_payment_id,
                source=source,
                payload=payload,
            ))
    except IntegrityError:
        return False
    return True


def _find_payment(provider: str, external_payment_id: str) -> Payment | None:
    query = db.session.query(Payment).filter_by(
        payment_provider=provider,
        external_payment_id=external_payment_id,
        kind=KIND_CHARGE,
    )
    return lock_for_update(query).order_by(Payment.id.desc()).first()


def process_status_update(
    provider: str,
    external_payment_id: str,
    external_status: str,
    provider_data: dict | None = None,
    *,
    event_id: str | None = None,
    event_type: str | None = None,
    source: str = "webhook",
) -> SyncOutcome:
    """
    Apply one provider status report to the matching charge.

    Returns a SyncOutcome; duplicate=True means the event id was seen before
    and nothing changed.
    """
    provider_data = dict(provider_data or {})
    internal = map_external_status(external_status)
    actor_type = ACTOR_WEBHOOK if source == "webhook" else ACTOR_SYSTEM
    max_attempts = current_app.config.get("PAYMENT_RETRY_MAX_ATTEMPTS", 3)
    base_minutes = current_app.config.get("PAYMENT_RETRY_BASE_MINUTES", 30)

    def _op():
        if event_id and not _record_event(provider, event_id, event_type, external_payment_id, source, provider_data):
            return SyncOutcome(None, None, None, duplicate=True), None

        payment = _find_payment(provider, external_payment_id)
        if payment is None:
            current_app.logger.info("no %s payment for external id %s", provider, external_payment_id)
            db.session.commit()
            return SyncOutcome(None, None, None), None

        outcome = SyncOutcome(payment.id, payment.status, payment.status)
        if payment.status in TERMINAL_STATUSES or payment.status == internal:
            db.session.commit()
            return outcome, None

        tx = payment.transaction
        now = utcnow()
        event = None
        data = {**(payment.payment_data or {})}
        data["last_sync"] = {
            "source": source,
            "event_id": event_id,
            "external_status": external_status,
            "at": now.isoformat(),
        }
        if provider_data.get("capture_id"):
            data["capture_id"] = provider_data["capture_id"]

        if internal == STATUS_COMPLETED:
            apply_completion(payment, tx)
            action = "payment_status_synced"
            event = notification_service.DEPOSIT_CONFIRMED

        elif internal == STATUS_FAILED:
            reason = _failure_reason(provider_data)
            attempts = payment.retry_attempts or 0
            payment.failure_reason = reason[:255]
            if is_retryable_failure(reason) and attempts < max_attempts:
                attempt = attempts + 1
                payment.status = STATUS_PENDING_RETRY
                payment.retry_attempts = attempt
                payment.next_retry_at = now + timedelta(minutes=base_minutes * attempt)
                outcome.retry_scheduled = True
                action = "payment_retry_scheduled"
                event = notification_service.DEPOSIT_FAILED
            else:
                payment.status = STATUS_FAILED
                payment.next_retry_at = None
                append_note(tx, f"Payment {payment.id} failed: {reason}. Requires manual review.")
                outcome.manual_review = True
                action = "payment_failed"
                event = notification_service.MANUAL_REVIEW_REQUIRED

        else:
            if not can_transition_payment(payment.status, internal):
                db.session.commit()
                return outcome, None
            payment.status = internal
            action = "payment_status_synced"

        payment.payment_data = data
        outcome.status = payment.status
        outcome.applied = True

        audit_service.record(
            action=action,
            entity_type="payment",
            entity_id=payment.id,
            actor_type=actor_type,
            before={"status": outcome.previous_status},
            after={"status": payment.status, "retry_attempts": payment.retry_attempts},
            metadata={
                "provider": provider,
                "external_payment_id": external_payment_id,
                "external_status": external_status,
                "event_id": event_id,
                "source": source,
            },
        )
        db.session.commit()
        return outcome, event

    outcome, event = run_with_retry(_op)
    if outcome.applied:
        current_app.logger.info(
            "payment %s: %s -> %s (%s)", outcome.payment_id, outcome.previous_status, outcome.status, source
        )
    if event is not None:
        payment = db.session.get(Payment, outcome.payment_id)
        notification_service.deliver(event, payment.transaction, actor_type=actor_type, payment_id=payment.id)
    return outcome


def _poll(payment: Payment, event_prefix: str, source: str) -> SyncOutcome | None:
    provider = get_provider(payment.payment_method)
    if not provider.is_external or not payment.external_payment_id:
        return None
    try:
        status = provider.fetch_status(payment.external_payment_id)
    except ProviderError as exc:
        current_app.logger.warning("status check for payment %s failed: %s", payment.id, exc)
        return None
    provider_data = dict(status.payload)
    if status.failure_reason:
        provider_data["reason"] = status.failure_reason
    return process_status_update(
        provider.name,
        payment.external_payment_id,
        status.status,
        provider_data,
        event_id=f"{event_prefix}:{payment.id}:{payment.retry_attempts}:{status.status}",
        event_type=f"{source}.status",
        source=source,
    )


def process_due_retries(now: datetime | None = None) -> list[SyncOutcome]:
    """Re-check every pending_retry payment whose next_retry_at has passed."""
    now = now or utcnow()
    due = (
        db.session.query(Payment)
        .filter(
            Payment.status == STATUS_PENDING_RETRY,
            Payment.next_retry_at.isnot(None),
            Payment.next_retry_at <= now,
        )
        .order_by(Payment.next_retry_at.asc())
        .all()
    )
    outcomes = []
    for payment in due:
        outcome = _poll(payment, "retry", "retry")
        if outcome is not None:
            outcomes.append(outcome)
    current_app.logger.info("retry sweep: %d due, %d processed", len(due), len(outcomes))
    return outcomes


def monitor_pending_payments(now: datetime | None = None) -> list[SyncOutcome]:
    """Poll the provider for open provider-backed charges older than the stale window."""
    now = now or utcnow()
    stale_minutes = current_app.config.get("PENDING_PAYMENT_STALE_MINUTES", 10)
    cutoff = now - timedelta(minutes=stale_minutes)
    stale = (
        db.session.query(Payment)
        .filter(
            Payment.kind == KIND_CHARGE,
            Payment.status.in_(OPEN_STATUSES),
            Payment.payment_provider.isnot(None),
            Payment.external_payment_id.isnot(None),
            Payment.created_at <= cutoff,
        )
        .order_by(Payment.id.asc())
        .all()
    )
    outcomes = []
    for payment in stale:
        outcome = _poll(payment, "poll", "poll")
        if outcome is not None:
            outcomes.append(outcome)
    current_app.logger.info("pending monitor: %d stale, %d checked", len(stale), len(outcomes))
    return outcomes
