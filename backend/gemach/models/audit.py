from __future__ import annotations

from ..extensions import db
from gemach.time_utils import to_utc_z


class AuditLog(db.Model):
    """
    Append-only compliance record of confirmations, refunds, card resolution
    and bulk operations.

    - Identity key from the database; no process-local counters.
    - Written inside the same DB transaction as the change it records.
    - Never updated or deleted (enforced by ORM listeners in audit_service).
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    actor_type = db.Column(db.String(16), nullable=False, default="system")  # admin, operator, borrower, system, webhook

    action = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    before_json = db.Column(db.JSON, nullable=True)
    after_json = db.Column(db.JSON, nullable=True)
    metadata_json = db.Column(db.JSON, nullable=True)

    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_user_id": self.actor_user_id,
            "actor_type": self.actor_type,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "before": self.before_json,
            "after": self.after_json,
            "metadata": self.metadata_json,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": to_utc_z(self.created_at),
        }


class WebhookEvent(db.Model):
    """
    Dedup record for provider notifications.

    A (provider, event_id) pair is inserted in the same DB transaction as the
    status change it triggers; redelivery hits the unique constraint and is
    treated as already processed.
    """
    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False)
    event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(64), nullable=True)
    external_payment_id = db.Column(db.String(255), nullable=True, index=True)
    source = db.Column(db.String(32), nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "external_payment_id": self.external_payment_id,
            "source": self.source,
            "received_at": to_utc_z(self.received_at),
        }
