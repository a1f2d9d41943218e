"""
core/envelope.py -- Pydantic models for the uniform API response envelope.

Every remote call answers with {success, message, data?, meta?}. Failure
bodies may add per-field `errors`, and a handful of endpoints add extra keys
(blocked_until / forceLogout on blocked accounts, is_unique on slug checks).
Extras are kept rather than rejected so callers can read them off the model.

Separation of concerns: these models are the wire contract. The dataclasses in
auth/models.py and directory/models.py are the client's domain truth; stores
map between the two.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaginationMeta(BaseModel):
    """Pagination block returned by list endpoints."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    total: int = 0
    page: int = 1
    limit: int = 0
    total_pages: int = Field(default=1, alias="totalPages")


class FieldError(BaseModel):
    """One per-field validation message."""

    model_config = ConfigDict(extra="ignore")

    field: str = ""
    message: str = ""


class Envelope(BaseModel):
    """The {success, message, data?, meta?} shape every endpoint returns."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    success: bool = False
    message: str = ""
    data: Any = None
    meta: Optional[PaginationMeta] = None
    errors: Optional[list[FieldError]] = None

    @classmethod
    def failure(cls, message: str, **extra: Any) -> "Envelope":
        """Build the {success: False, message} value a failed operation returns."""
        return cls(success=False, message=message, **extra)

    def extra(self, name: str, default: Any = None) -> Any:
        """Read a non-standard key carried alongside the envelope fields."""
        return (self.model_extra or {}).get(name, default)
