# Overview: Append-only audit trail for deposit confirmations, refunds and card resolution.

"""
Audit Trail Invariants

- One AuditLog row per recorded action; ids come from the database.
- Rows are added to the caller's session and flushed, never committed here:
  they land in the same DB transaction as the change they describe.
- Rows are never updated or deleted. ORM listeners reject both.
- The trail is for compliance reconstruction; no control flow reads it.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import event

from ..errors import ImmutableRecordError
from ..extensions import db
from ..models import AuditLog
from .authorization import Actor


ACTOR_SYSTEM = "system"
ACTOR_WEBHOOK = "webhook"


def record(
    *,
    action: str,
    entity_type: str,
    entity_id: int,
    actor: Actor | None = None,
    actor_type: str | None = None,
    before: Any = None,
    after: Any = None,
    metadata: Any = None,
) -> AuditLog:
    """
    Append an audit entry to the current unit of work.

    actor_type defaults to the actor's role, or "system" without an actor.
    """
    entry = AuditLog(
        actor_user_id=actor.user_id if actor else None,
        actor_type=actor_type or (actor.role if actor else ACTOR_SYSTEM),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        before_json=before,
        after_json=after,
        metadata_json=metadata,
        ip_address=actor.ip_address if actor else None,
        user_agent=actor.user_agent if actor else None,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def get_audit_trail(entity_type: str, entity_id: int) -> list[AuditLog]:
    """Entries for one entity, newest first."""
    return (
        db.session.query(AuditLog)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(AuditLog.id.desc())
        .all()
    )


def get_recent_entries(limit: int = 50, action: str | None = None) -> list[AuditLog]:
    query = db.session.query(AuditLog)
    if action:
        query = query.filter_by(action=action)
    return query.order_by(AuditLog.id.desc()).limit(limit).all()


def count_entries(entity_type: str, entity_id: int, action: str | None = None) -> int:
    query = db.session.query(AuditLog).filter_by(entity_type=entity_type, entity_id=entity_id)
    if action:
        query = query.filter_by(action=action)
    return query.count()


def _reject_update(mapper, connection, target):
    raise ImmutableRecordError(f"Audit entry {target.id} is append-only and cannot be modified")


def _reject_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Audit entry {target.id} is append-only and cannot be deleted")


def register_audit_listeners() -> None:
    """Install the append-only guards. Safe to call repeatedly."""
    if not event.contains(AuditLog, "before_update", _reject_update):
        event.listen(AuditLog, "before_update", _reject_update)
    if not event.contains(AuditLog, "before_delete", _reject_delete):
        event.listen(AuditLog, "before_delete", _reject_delete)
