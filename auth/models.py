"""
auth/models.py -- Domain dataclasses for the client session.

Pattern: Data class (pure data containers, only payload mapping). Mirrors the
approach in directory/models.py -- dataclasses own domain shape; the session
manager does the work.

Layer rule: no imports from cache/, directory/, or sync/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


def normalize_role(raw: Any) -> Optional[str]:
    """Return a lower-cased role name from a string or a {"name": ...} object."""
    if isinstance(raw, dict):
        raw = raw.get("name")
    if raw is None or raw == "":
        return None
    return str(raw).lower()


@dataclass(frozen=True)
class Identity:
    """The signed-in user as the session sees it.

    Frozen: edits (email verification, synchronizer back-propagation) produce
    a new Identity via dataclasses.replace() so a caller holding the old value
    never sees it change underneath them.
    """

    id: str
    email: str = ""
    display_name: str = ""
    role: Optional[str] = None  # "admin", "seller", "author", ...
    email_verified: bool = False
    is_temporary_password: bool = False

    @classmethod
    def from_payload(cls, payload: dict) -> "Identity":
        verified = payload.get("email_verified", payload.get("emailVerified", False))
        temporary = payload.get("is_temporary_password", payload.get("isTemporaryPassword", False))
        return cls(
            id=str(payload["id"]),
            email=str(payload.get("email") or ""),
            display_name=str(payload.get("username") or payload.get("displayName") or payload.get("display_name") or ""),
            role=normalize_role(payload.get("role")),
            email_verified=bool(verified),
            is_temporary_password=bool(temporary),
        )

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.display_name,
            "role": self.role,
            "email_verified": self.email_verified,
            "is_temporary_password": self.is_temporary_password,
        }


@dataclass
class SessionState:
    """Process-wide session record.

    Invariants (enforced by SessionManager, the only writer):
      authenticated implies identity is not None
      blocked implies not authenticated
      requires_password_reset implies authenticated

    loading / error / blocked / blocked_until are request-scoped and are never
    persisted; see persisted().
    """

    identity: Optional[Identity] = None
    authenticated: bool = False
    loading: bool = False
    error: Optional[str] = None
    verified: Optional[bool] = None
    blocked: bool = False
    blocked_until: Optional[datetime] = None
    requires_password_reset: bool = False

    def persisted(self) -> dict:
        return {
            "identity": self.identity.to_payload() if self.identity else None,
            "authenticated": self.authenticated,
            "verified": self.verified,
            "requires_password_reset": self.requires_password_reset,
        }


@dataclass
class LoginCredentials:
    """Either email or username identifies the account."""

    password: str
    email: Optional[str] = None
    username: Optional[str] = None

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {"password": self.password}
        if self.email:
            payload["email"] = self.email
        if self.username:
            payload["username"] = self.username
        return payload


@dataclass
class RegistrationData:
    username: str
    email: str
    password: str
    phone: Optional[str] = None
    role_id: Optional[int] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {"username": self.username, "email": self.email, "password": self.password}
        if self.phone:
            payload["phone"] = self.phone
        if self.role_id is not None:
            payload["role_id"] = self.role_id
        payload.update(self.extra)
        return payload
