"""
directory/inquiries.py -- Cache of contact inquiries (/contacts).

Inquiries are submitted by anyone and triaged by staff; the only edit the
API allows is a status change (optionally with a response text).
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from cache.entity import EntityCacheStore
from core.envelope import Envelope
from directory.models import Inquiry

RESOURCE = "/contacts"

STATUSES = ("new", "in_progress", "resolved", "closed")


class InquiriesStore(EntityCacheStore[Inquiry]):
    resource = RESOURCE
    record_type = Inquiry
    label = "inquiry"
    default_filters = {
        "status": None,
        "inquiry_type": None,
        "search": "",
        "sort_by": "created_at",
        "sort_order": "desc",
    }
    search_fields = ("full_name", "email", "subject", "message")

    def __init__(self, transport, events=None, role_provider=None, page_limit: int = 100):
        super().__init__(transport, events, role_provider)
        self.page_limit = page_limit

    async def get_all(self, params: Optional[Mapping[str, Any]] = None) -> Envelope:
        return await super().get_all({"limit": self.page_limit, **(params or {})})

    async def update(self, record_id: str, payload: Mapping[str, Any]) -> Envelope:
        return await self._mutate(
            "Failed to update inquiry",
            lambda: self._transport.patch(self._item_path(record_id, "/status"), json=dict(payload)),
        )

    async def update_status(self, record_id: str, status: str, response: Optional[str] = None) -> Envelope:
        if status not in STATUSES:
            self.error = f"Unknown inquiry status: {status}"
            return Envelope.failure(self.error)
        payload: dict[str, Any] = {"status": status}
        if response is not None:
            payload["response"] = response
        return await self.update(record_id, payload)

    async def remove(self, record_id: str) -> Envelope:
        self._require_admin("delete inquiries")
        return await super().remove(record_id)
