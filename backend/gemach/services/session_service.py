# Overview: Bearer session tokens for staff; issue, validate and revoke.

"""
Session Token Management Service

WHY: Staff requests carry an opaque bearer token. Tokens are random,
stored only as a SHA-256 hash, time-limited and revocable.

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- 24-hour absolute timeout (SESSION_ABSOLUTE_TIMEOUT)
- 2-hour idle timeout (SESSION_IDLE_TIMEOUT)
- Deactivating a user revokes their sessions on next use
"""

import hashlib
import secrets
from datetime import timedelta

from ..errors import NotFoundError
from ..extensions import db
from ..models import SessionToken, User
from gemach.time_utils import is_past, utcnow
from .authorization import Actor


SESSION_ABSOLUTE_TIMEOUT = timedelta(hours=24)
SESSION_IDLE_TIMEOUT = timedelta(hours=2)


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    SHA-256 of the plaintext token.

    WHY SHA-256 not bcrypt: tokens are already high-entropy.
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[SessionToken, str]:
    """
    Returns (session_record, plaintext_token). Only the hash is stored.
    """
    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        raise NotFoundError("User not found")

    plaintext_token = generate_token()
    now = utcnow()
    session = SessionToken(
        user_id=user_id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + SESSION_ABSOLUTE_TIMEOUT,
        user_agent=(user_agent or "")[:255] or None,
        ip_address=ip_address,
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()
    return session, plaintext_token


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()


def validate_session(token: str) -> User | None:
    """
    Returns the session's User, or None when the token is unknown, expired,
    idle too long, revoked, or belongs to a deactivated user.
    """
    session = (
        db.session.query(SessionToken)
        .filter_by(token_hash=hash_token(token), is_revoked=False)
        .first()
    )
    if not session:
        return None

    now = utcnow()
    if is_past(session.expires_at, now):
        return None

    if now - session.last_used_at > SESSION_IDLE_TIMEOUT:
        _revoke(session, "Idle timeout")
        return None

    user = session.user
    if not user or not user.is_active:
        _revoke(session, "User account deactivated")
        return None

    session.last_used_at = now
    db.session.commit()
    return user


def actor_for_user(user: User, ip_address: str | None = None, user_agent: str | None = None) -> Actor:
    return Actor(
        role=user.role,
        user_id=user.id,
        location_id=user.location_id,
        username=user.username,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """Returns True if an active session was revoked."""
    session = (
        db.session.query(SessionToken)
        .filter_by(token_hash=hash_token(token), is_revoked=False)
        .first()
    )
    if not session:
        return False
    _revoke(session, reason)
    return True


def cleanup_expired_sessions() -> int:
    """Delete sessions that are expired or revoked and older than 30 days."""
    cutoff = utcnow() - timedelta(days=30)
    deleted = (
        db.session.query(SessionToken)
        .filter(
            db.or_(SessionToken.expires_at < utcnow(), SessionToken.is_revoked.is_(True)),
            SessionToken.created_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return deleted
