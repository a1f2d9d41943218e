"""
directory/users.py -- Cache of user accounts (/users), admin-facing.

Besides the default listing the store keeps two role collections, `admins`
and `authors`, which follow every role change the cache sees. Edits to a
user publish IdentityRecordUpdated so the synchronizer can mirror them onto
the session identity when the edited user is the signed-in one.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from auth.models import normalize_role
from cache.entity import EntityCacheStore
from core.envelope import Envelope
from core.events import IdentityRecordUpdated
from directory.models import UserRecord, replace_fields

logger = logging.getLogger("bizdir.cache")

RESOURCE = "/users"

# collection name -> role whose members it holds
ROLE_COLLECTIONS = {"admins": "admin", "authors": "author"}


class UsersStore(EntityCacheStore[UserRecord]):
    resource = RESOURCE
    record_type = UserRecord
    label = "user"
    collections = ("items", "mine", "admins", "authors")
    update_method = "PUT"
    default_filters = {"role": "ALL", "search": "", "sort_by": "username", "sort_order": "asc"}
    search_fields = ("username", "email")

    async def get_all(self, params: Optional[Mapping[str, Any]] = None) -> Envelope:
        envelope = await super().get_all(params)
        if envelope.success and self.is_initially_loaded:
            for name, role in ROLE_COLLECTIONS.items():
                self._collections[name] = [u for u in self._collections["items"] if u.role == role]
        return envelope

    async def get_admins(self) -> Envelope:
        return await self._fetch_view("admins", "admins", f"{RESOURCE}/admins", None, "Failed to fetch admins")

    async def get_authors(self) -> Envelope:
        return await self._fetch_view("authors", "authors", f"{RESOURCE}/authors", None, "Failed to fetch authors")

    async def create(self, payload: Mapping[str, Any], files: Any = None) -> Envelope:
        """Admin account creation; goes through the registration endpoint."""
        self._require_admin("create users")

        def apply(envelope: Envelope) -> None:
            record = self._record_from(envelope)
            self._insert(record, ("items",))
            self._follow_role(record)

        return await self._run(
            "Failed to create user", lambda: self._transport.post("/auth/register", json=dict(payload)), apply
        )

    async def update(self, record_id: str, payload: Mapping[str, Any]) -> Envelope:
        envelope = await self._mutate(
            "Failed to update user",
            lambda: self._transport.put(self._item_path(record_id), json=dict(payload)),
        )
        await self._after_edit(envelope, record_id)
        return envelope

    async def update_role(self, record_id: str, role: str) -> Envelope:
        """Change a user's role.

        The cached record is the source of truth for the current role: an
        unknown id fails locally, and an unchanged role returns success
        without calling the server.
        """
        self._require_admin("change user roles")
        current = self._find(str(record_id))
        if current is None:
            self.error = "User not found"
            return Envelope.failure(self.error)
        wanted = normalize_role(role)
        if wanted == current.role:
            logger.debug("Role of user %s already %s; skipping request", record_id, wanted)
            return Envelope(success=True, message="Role unchanged", data=None)

        def apply(envelope: Envelope) -> None:
            if isinstance(envelope.data, dict):
                record = self._record_from(envelope)
            else:
                record = replace_fields(current, role=wanted)
            self._replace_everywhere(record)
            self._follow_role(record)

        envelope = await self._run(
            "Failed to update user role",
            lambda: self._transport.put(self._item_path(record_id, "/role"), json={"role": wanted}),
            apply,
        )
        await self._after_edit(envelope, record_id)
        return envelope

    async def remove(self, record_id: str) -> Envelope:
        self._require_admin("delete users")
        return await super().remove(record_id)

    def _find(self, record_id: str) -> Optional[UserRecord]:
        for records in self._collections.values():
            for record in records:
                if record.id == record_id:
                    return record
        if self.selected is not None and self.selected.id == record_id:
            return self.selected
        return None

    def _follow_role(self, record: UserRecord) -> None:
        for name, role in ROLE_COLLECTIONS.items():
            if record.role == role:
                self._insert(record, (name,))
            else:
                self._collections[name] = [r for r in self._collections[name] if r.id != record.id]

    async def _after_edit(self, envelope: Envelope, record_id: str) -> None:
        if not envelope.success:
            return
        record = self._find(str(record_id))
        if record is not None:
            self._follow_role(record)
        elif isinstance(envelope.data, dict) and "id" in envelope.data:
            record = UserRecord.from_payload(envelope.data)
        if record is None or self._events is None:
            return
        await self._events.publish(
            IdentityRecordUpdated(
                record_id=record.id,
                fields={"username": record.username, "email": record.email, "role": record.role},
            )
        )
