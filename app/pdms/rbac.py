"""
Access policy and actor identity.

`is_allowed` is a pure predicate: no state, no I/O, never raises. Service code
calls `ensure_allowed`, which turns a denial into `AuthorizationError`.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import TYPE_CHECKING, Any

from flask import g, jsonify

from app.pdms.errors import AuthorizationError, ValidationError

if TYPE_CHECKING:
    from app.pdms.models import User


ROLE_ADMIN = "admin"
ROLE_MANAGEMENT = "management"
ROLE_PRODUCTION = "production"
ROLE_LAB = "lab"
ROLES = frozenset({ROLE_ADMIN, ROLE_MANAGEMENT, ROLE_PRODUCTION, ROLE_LAB})

REVIEWER_ROLES = frozenset({ROLE_MANAGEMENT, ROLE_ADMIN})

# Actions
DOCUMENT_READ = "document.read"
DOCUMENT_CREATE = "document.create"
DOCUMENT_UPDATE = "document.update"
DOCUMENT_ADMIN = "document.admin"
DRAFT_CREATE = "draft.create"
DRAFT_EDIT = "draft.edit"
DRAFT_DELETE = "draft.delete"
DRAFT_SUBMIT = "draft.submit"
MERGE_REQUEST_REVIEW = "merge_request.review"
USER_ADMIN = "user.admin"
AUDIT_VIEW = "audit.view"
REPORT_GENERATE = "report.generate"
REPORT_DOWNLOAD = "report.download"

# Actions gated on the actor owning the resource.
_OWNER_ACTIONS = frozenset({DOCUMENT_UPDATE, DRAFT_EDIT, DRAFT_DELETE, DRAFT_SUBMIT})
# Actions gated on role alone.
_ROLE_ACTIONS: dict[str, frozenset[str]] = {
    DOCUMENT_CREATE: ROLES,
    DRAFT_CREATE: ROLES,
    MERGE_REQUEST_REVIEW: REVIEWER_ROLES,
    DOCUMENT_ADMIN: frozenset({ROLE_ADMIN}),
    USER_ADMIN: frozenset({ROLE_ADMIN}),
    AUDIT_VIEW: REVIEWER_ROLES,
    REPORT_GENERATE: REVIEWER_ROLES,
}
_OPEN_CLASSIFICATIONS = frozenset({"public", "internal"})


@dataclass(frozen=True)
class Actor:
    """The current caller as supplied by the identity provider."""

    id: int
    role: str
    name: str
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def actor_for(user: "User") -> Actor:
    if user.role not in ROLES:
        raise ValidationError(f"Unknown role {user.role!r} for user {user.id}")
    return Actor(id=user.id, role=user.role, name=user.name, email=user.email)


def is_allowed(
    role: str | None,
    action: str,
    *,
    is_owner: bool = False,
    classification: str | None = None,
) -> bool:
    if role not in ROLES:
        return False
    if role == ROLE_ADMIN:
        return True
    if action in _OWNER_ACTIONS:
        return is_owner
    if action == DOCUMENT_READ:
        if classification is None or classification in _OPEN_CLASSIFICATIONS:
            return True
        return is_owner or role == ROLE_MANAGEMENT
    if action == REPORT_DOWNLOAD:
        return is_owner or role in REVIEWER_ROLES
    allowed_roles = _ROLE_ACTIONS.get(action)
    if allowed_roles is None:
        return False
    return role in allowed_roles


def ensure_allowed(
    actor: Actor,
    action: str,
    *,
    is_owner: bool = False,
    classification: str | None = None,
    message: str | None = None,
) -> None:
    if not is_allowed(actor.role, action, is_owner=is_owner, classification=classification):
        raise AuthorizationError(
            message or f"Role '{actor.role}' may not perform {action}",
            details={"action": action},
        )


def require_role(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Route guard: 401 without a signed-in user, 403 when the role is not listed (empty = any role)."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            actor: Actor | None = getattr(g, "current_actor", None)
            if actor is None:
                return jsonify({"ok": False, "error": "Authentication required"}), 401
            if roles and actor.role not in roles and not actor.is_admin:
                raise AuthorizationError("Insufficient permissions", details={"required_roles": list(roles)})
            return fn(*args, **kwargs)

        return wrapped

    return decorator
