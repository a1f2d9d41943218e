"""
auth/permissions.py -- Client-side role mirror for admin-gated store actions.

This is a UX guard only. It saves a round-trip that the server would reject
anyway and lets the caller show a message early. The API enforces the same
rules server-side; nothing here is a security boundary.

Layer rule: no imports from cache/, directory/, or sync/.
"""

from __future__ import annotations

from typing import Callable, Optional

from core.errors import AuthorizationError

RoleProvider = Callable[[], Optional[str]]

ADMIN = "admin"


def require_role(role_provider: Optional[RoleProvider], required: str, action: str) -> None:
    """Raise AuthorizationError unless the current role equals `required`.

    A missing provider (store built without a session) or an anonymous session
    both fail the check.
    """
    actual = role_provider() if role_provider is not None else None
    if actual != required:
        raise AuthorizationError(action, required, actual)


def require_admin(role_provider: Optional[RoleProvider], action: str) -> None:
    require_role(role_provider, ADMIN, action)
