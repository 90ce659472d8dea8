# Overview: Staff accounts and credential hashing (passwords and location PINs).

"""
Authentication Service

WHY: Every confirmation, refund and card charge must be attributable to a
staff account. Uses bcrypt for password and PIN hashing.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters, at least one letter and one digit
- Session tokens managed separately (see session_service.py)
- Operators must be bound to a location; admins must not be
"""

import re

import bcrypt

from ..errors import InvalidArgumentError, NotFoundError
from ..extensions import db
from ..models import Location, User
from gemach.time_utils import utcnow
from .authorization import ROLE_ADMIN, ROLE_OPERATOR


class PasswordValidationError(InvalidArgumentError):
    """Raised when password doesn't meet strength requirements."""
    code = "WEAK_PASSWORD"


def validate_password_strength(password: str) -> None:
    if not password or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r"[A-Za-z]", password):
        raise PasswordValidationError("Password must contain at least one letter")

    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_secret(secret: str, rounds: int = 12) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(secret.encode("utf-8"), salt).decode("utf-8")


def verify_secret(secret: str, secret_hash: str | None) -> bool:
    """
    Check a password or PIN against its bcrypt hash.

    WHY timing-safe: bcrypt.checkpw() compares in constant time.
    A malformed hash counts as a mismatch.
    """
    if not secret or not secret_hash:
        return False
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), secret_hash.encode("utf-8"))
    except ValueError:
        return False


def hash_password(password: str) -> str:
    """Validate strength, then hash with bcrypt."""
    validate_password_strength(password)
    return hash_secret(password)


def create_user(
    username: str,
    email: str,
    password: str,
    role: str = ROLE_OPERATOR,
    location_id: int | None = None,
) -> User:
    """
    Create a staff account.

    Raises:
        InvalidArgumentError: unknown role, duplicate username, bad binding
        PasswordValidationError: weak password
        NotFoundError: location does not exist
    """
    username = (username or "").strip()
    if not username:
        raise InvalidArgumentError("username is required")
    if role not in (ROLE_ADMIN, ROLE_OPERATOR):
        raise InvalidArgumentError(f"Staff role must be '{ROLE_ADMIN}' or '{ROLE_OPERATOR}'")

    if role == ROLE_OPERATOR:
        if location_id is None:
            raise InvalidArgumentError("Operators must be assigned to a location")
        if db.session.get(Location, location_id) is None:
            raise NotFoundError(f"Location {location_id} not found")
    else:
        location_id = None

    if db.session.query(User).filter_by(username=username).first():
        raise InvalidArgumentError("Username already exists")

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        role=role,
        location_id=location_id,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """
    Returns the User if credentials are valid, None otherwise.
    Updates last_login_at on success.
    """
    user = (
        db.session.query(User)
        .filter(
            db.or_(User.username == username, User.email == username),
            User.is_active.is_(True),
        )
        .first()
    )
    if not user:
        return None

    if verify_secret(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None


def deactivate_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    user.is_active = False
    db.session.commit()
    return user
