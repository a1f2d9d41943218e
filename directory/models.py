"""
directory/models.py -- Domain dataclasses for the cached directory entities.

These are pure data containers. Each has a from_payload() constructor that
maps the server's JSON onto the known fields and keeps everything else in
`extra`, so a backend that grows a field does not break the client.

Records are treated as immutable values by the stores: a server response
replaces the cached record by id, it is never edited in place.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Optional, TypeVar

from auth.models import normalize_role

R = TypeVar("R")


def _split(cls: type, payload: dict) -> tuple[dict[str, Any], dict[str, Any]]:
    names = {f.name for f in dataclasses.fields(cls) if f.name != "extra"}
    known = {k: v for k, v in payload.items() if k in names}
    extra = {k: v for k, v in payload.items() if k not in names}
    return known, extra


def replace_fields(record: R, **fields: Any) -> R:
    """Return a copy of record with fields replaced."""
    return dataclasses.replace(record, **fields)


@dataclass
class OrganizationType:
    id: str
    name: str = ""

    @classmethod
    def from_payload(cls, payload: dict) -> "OrganizationType":
        return cls(id=str(payload["id"]), name=str(payload.get("name") or ""))

    def to_payload(self) -> dict:
        return {"id": self.id, "name": self.name}


@dataclass
class Organization:
    """A company listing.

    slug is unique across the directory; OrganizationsStore.check_uniqueness()
    validates it live while the user types.
    """

    id: str
    name: str = ""
    slug: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    description: Optional[str] = None
    company_type_id: Optional[str] = None
    area_id: Optional[str] = None
    is_blocked: bool = False
    is_premium: bool = False
    is_verified: bool = False
    average_rating: Optional[float] = None
    total_reviews: int = 0
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "Organization":
        known, extra = _split(cls, payload)
        known["id"] = str(payload["id"])
        return cls(**known, extra=extra)


@dataclass
class UserRecord:
    """A user as listed by the admin users endpoints (not the session identity)."""

    id: str
    username: str = ""
    email: str = ""
    role: Optional[str] = None  # "admin" | "author" | "seller"
    is_temporary_password: bool = False
    last_login: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "UserRecord":
        renamed = dict(payload)
        # camelCase variants from the users service
        for camel, snake in (
            ("isTemporaryPassword", "is_temporary_password"),
            ("lastLogin", "last_login"),
            ("createdAt", "created_at"),
            ("updatedAt", "updated_at"),
        ):
            if camel in renamed:
                renamed.setdefault(snake, renamed.pop(camel))
        known, extra = _split(cls, renamed)
        known["id"] = str(payload["id"])
        known["role"] = normalize_role(payload.get("role"))
        return cls(**known, extra=extra)


@dataclass
class Inquiry:
    """A contact/inquiry submission."""

    id: str
    full_name: str = ""
    email: str = ""
    message: str = ""
    phone: Optional[str] = None
    subject: Optional[str] = None
    inquiry_type: Optional[str] = None  # admission | general | complaint | suggestion | partnership | technical
    status: str = "new"  # new | in_progress | resolved | closed
    response: Optional[str] = None
    responded_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "Inquiry":
        known, extra = _split(cls, payload)
        known["id"] = str(payload["id"])
        return cls(**known, extra=extra)
