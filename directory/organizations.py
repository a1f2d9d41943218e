"""
directory/organizations.py -- Cache of company listings (/companies).

Collections:
  items      default listing (get_all / search / filter; the "search" and
             "filtered" views keep only their latest query)
  mine       listings created by the signed-in user
  premium    /companies/premium-companies
  verified   /companies/verified-companies
  top_rated  /companies/top-rated
  blocked    /companies/blocked-companies (admin)

Organization types are reference data: they are cached in the
"reference-data" blob and outlive the session, so reset() does not drop them.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from cache.entity import EntityCacheStore
from cache.store import REFERENCE_BLOB, PersistedStateStore
from core.envelope import Envelope
from core.errors import ApiError
from directory.models import Organization, OrganizationType

logger = logging.getLogger("bizdir.cache")

RESOURCE = "/companies"


class OrganizationsStore(EntityCacheStore[Organization]):
    resource = RESOURCE
    record_type = Organization
    label = "company"
    collections = ("items", "mine", "premium", "verified", "top_rated", "blocked")
    mine_path = f"{RESOURCE}/my-companies"
    uniqueness_path = RESOURCE + "/slug/{candidate}/check"
    update_method = "PUT"
    create_targets = ("mine",)
    prepend_on_create = True
    select_on_create = True
    default_filters = {
        "search": "",
        "company_type_id": None,
        "is_verified": None,
        "is_premium": None,
        "sort_by": "name",
        "sort_order": "asc",
    }
    search_fields = ("name", "slug", "description", "email")

    def __init__(self, transport, events=None, role_provider=None, state_store: Optional[PersistedStateStore] = None):
        super().__init__(transport, events, role_provider)
        self._state_store = state_store
        self.organization_types: list[OrganizationType] = self._load_types()

    # ------------------------------------------------------------------
    # Specialized views
    # ------------------------------------------------------------------

    async def get_premium(self, params: Optional[Mapping[str, Any]] = None) -> Envelope:
        return await self._fetch_view(
            "premium", "premium", f"{RESOURCE}/premium-companies", params, "Failed to fetch premium companies"
        )

    async def get_verified(self, params: Optional[Mapping[str, Any]] = None) -> Envelope:
        return await self._fetch_view(
            "verified", "verified", f"{RESOURCE}/verified-companies", params, "Failed to fetch verified companies"
        )

    async def get_top_rated(self, limit: Optional[int] = None) -> Envelope:
        return await self._fetch_view(
            "top_rated", "top_rated", f"{RESOURCE}/top-rated", {"limit": limit}, "Failed to fetch top rated companies"
        )

    async def get_blocked(self, params: Optional[Mapping[str, Any]] = None) -> Envelope:
        self._require_admin("view blocked companies")
        return await self._fetch_view(
            "blocked", "blocked", f"{RESOURCE}/blocked-companies", params, "Failed to fetch blocked companies"
        )

    async def search(self, query: str, params: Optional[Mapping[str, Any]] = None) -> Envelope:
        """Server-side search; results replace `items`."""
        merged = {**(params or {}), "query": query}
        return await self._fetch_view("search", "items", f"{RESOURCE}/search", merged, "Failed to search companies")

    async def filter(self, criteria: Mapping[str, Any]) -> Envelope:
        return await self._fetch_view("filtered", "items", f"{RESOURCE}/filter", criteria, "Failed to filter companies")

    # ------------------------------------------------------------------
    # Admin-gated status changes
    # ------------------------------------------------------------------

    async def remove(self, record_id: str) -> Envelope:
        self._require_admin("delete companies")
        return await super().remove(record_id)

    async def toggle_block_status(self, record_id: str) -> Envelope:
        self._require_admin("block companies")
        return await self._mutate(
            "Failed to toggle block status",
            lambda: self._transport.patch(self._item_path(record_id, "/toggle-block")),
        )

    async def update_premium_status(self, record_id: str, is_premium: bool) -> Envelope:
        self._require_admin("change premium status")
        return await self._mutate(
            "Failed to update premium status",
            lambda: self._transport.patch(self._item_path(record_id, "/premium"), json={"is_premium": is_premium}),
        )

    async def update_verification_status(self, record_id: str, is_verified: bool) -> Envelope:
        self._require_admin("change verification status")
        return await self._mutate(
            "Failed to update verification status",
            lambda: self._transport.patch(
                self._item_path(record_id, "/verification"), json={"is_verified": is_verified}
            ),
        )

    async def recalculate_stats(self, record_id: str) -> Envelope:
        self._require_admin("recalculate company stats")
        return await self._mutate(
            "Failed to recalculate stats",
            lambda: self._transport.post(self._item_path(record_id, "/recalculate-stats")),
        )

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def get_organization_types(self, force: bool = False) -> list[OrganizationType]:
        """Return the company-type taxonomy, fetching it once per install.

        Failures are logged and leave the cached list in place; they do not
        touch the shared loading/error fields.
        """
        if self.organization_types and not force:
            return list(self.organization_types)
        try:
            envelope = await self._transport.get(f"{RESOURCE}/companyType")
        except ApiError as e:
            logger.warning("Could not fetch company types: %s", e.message)
            return list(self.organization_types)
        if not envelope.success or not isinstance(envelope.data, list):
            logger.warning("Company types response was not a list: %s", envelope.message)
            return list(self.organization_types)
        self.organization_types = [OrganizationType.from_payload(p) for p in envelope.data]
        if self._state_store is not None:
            self._state_store.save(
                REFERENCE_BLOB, {"organization_types": [t.to_payload() for t in self.organization_types]}
            )
        logger.info("Cached %d company types", len(self.organization_types))
        return list(self.organization_types)

    def _load_types(self) -> list[OrganizationType]:
        if self._state_store is None:
            return []
        raw = self._state_store.load(REFERENCE_BLOB).get("organization_types")
        if not isinstance(raw, list):
            return []
        try:
            return [OrganizationType.from_payload(p) for p in raw]
        except (KeyError, TypeError):
            logger.warning("Ignoring unreadable cached company types")
            return []
