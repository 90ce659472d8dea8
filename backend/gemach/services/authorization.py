# Overview: Role and location scoping for deposit operations.

"""
Authorization rules

ROLES:
- admin: wildcard over every location
- operator: only transactions/payments of their own location
- borrower: never allowed to confirm, refund, return, charge or decline

An Actor is built by the route layer from the session (or is an anonymous
borrower) and passed into every service call that needs gating.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import ForbiddenError


ROLE_ADMIN = "admin"
ROLE_OPERATOR = "operator"
ROLE_BORROWER = "borrower"

VALID_ROLES = [ROLE_ADMIN, ROLE_OPERATOR, ROLE_BORROWER]


@dataclass(frozen=True)
class Actor:
    role: str
    user_id: int | None = None
    location_id: int | None = None
    username: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_OPERATOR)

    @classmethod
    def system(cls) -> "Actor":
        return cls(role=ROLE_ADMIN, username="system")

    @classmethod
    def borrower(cls, ip_address: str | None = None, user_agent: str | None = None) -> "Actor":
        return cls(role=ROLE_BORROWER, ip_address=ip_address, user_agent=user_agent)


def can_access_location(actor: Actor, location_id: int | None) -> bool:
    if actor.role == ROLE_ADMIN:
        return True
    if actor.role == ROLE_OPERATOR:
        if actor.location_id is None:
            return False
        if location_id is None:
            return True
        return actor.location_id == location_id
    return False


def require_staff(actor: Actor, operation: str) -> None:
    """Reject borrowers (and unknown roles) before anything is loaded."""
    if not actor.is_staff:
        raise ForbiddenError(f"{actor.role}s are not authorized to {operation}")


def require_location_access(actor: Actor, location_id: int, operation: str) -> None:
    require_staff(actor, operation)
    if not can_access_location(actor, location_id):
        raise ForbiddenError(f"Operator not authorized to {operation} for location {location_id}")


def require_admin(actor: Actor, operation: str) -> None:
    if not actor.is_admin:
        raise ForbiddenError(f"Admin access required to {operation}")
