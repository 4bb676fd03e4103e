"""
Decision access contract.

Every mutating decision operation calls ``assert_access`` before touching the
database. Identity itself lives outside this package: the HTTP layer turns
the authenticated API key role and the ``X-User`` header into an ``Actor``.

Usage:
    from decision_engine.services.access import Actor, assert_access

    assert_access(actor, "proposal", "submit")   # raises UnauthorizedError
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from decision_engine.core.exceptions import UnauthorizedError

logger = logging.getLogger(__name__)

# ── Roles ────────────────────────────────────────────────────────────────────

ROLES = {"admin", "editor", "viewer"}

# Role hierarchy: admin > editor > viewer
ROLE_HIERARCHY = {
    "admin": {"admin", "editor", "viewer"},
    "editor": {"editor", "viewer"},
    "viewer": {"viewer"},
}

# Minimum role per action
ACTION_ROLES = {
    "read": "viewer",
    "create": "editor",
    "update": "editor",
    "submit": "editor",
    "delete": "editor",
    "admin": "admin",
}


@dataclass(frozen=True)
class Actor:
    """The caller of a decision operation."""

    user_id: str | None
    role: str = "viewer"

    @property
    def is_admin(self) -> bool:
        return has_role(self, "admin")


SYSTEM_ACTOR = Actor(user_id="system", role="admin")


def has_role(actor: Actor | None, minimum_role: str) -> bool:
    if actor is None:
        return False
    return minimum_role in ROLE_HIERARCHY.get(actor.role, set())


def assert_access(actor: Actor | None, resource: str, action: str) -> None:
    """Raise UnauthorizedError unless ``actor`` may perform ``action`` on ``resource``."""
    required = ACTION_ROLES.get(action)
    if required is None:
        raise UnauthorizedError(f"Unknown action '{action}' on {resource}")
    if not has_role(actor, required):
        logger.warning(
            "Access denied: role '%s' tried '%s' on %s (requires %s)",
            getattr(actor, "role", None), action, resource, required,
        )
        raise UnauthorizedError(f"Not authorized to {action} {resource}")


def assert_owner_or_admin(actor: Actor, owner_id: str | None, resource: str) -> None:
    """Owner-only operations: the owner or any admin may proceed."""
    if actor.is_admin:
        return
    if owner_id is not None and actor.user_id == owner_id:
        return
    raise UnauthorizedError(f"Only the owner or an admin may modify this {resource}")
