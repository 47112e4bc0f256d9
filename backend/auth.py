# auth.py
"""Actor identity handed to us by the upstream auth gateway.

Sessions and tokens are issued elsewhere; requests reach this service with
the authenticated user id and role in headers, which are trusted as-is.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header

from errors import AuthenticationError, AuthorizationError

ROLES = ("customer", "vendor", "volunteer", "admin")


@dataclass(frozen=True)
class Actor:
    id: str
    role: str


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> Actor:
    if not x_actor_id or not x_actor_role:
        raise AuthenticationError("Authentication required")
    role = x_actor_role.strip().lower()
    if role not in ROLES:
        raise AuthenticationError("Unknown role", kind="unknown_role")
    return Actor(id=x_actor_id.strip(), role=role)


def require_role(*roles):
    """Dependency factory: the actor must hold one of ``roles``."""

    def dependency(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            raise AuthorizationError(f"This action requires role: {', '.join(roles)}")
        return actor

    return dependency
