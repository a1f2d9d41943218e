"""
cache/entity.py -- Generic in-memory mirror of one server resource collection.

EntityCacheStore holds named collections of records ("items", "mine", plus
whatever a subclass adds), a `selected` detail record, per-view loaded flags
and pagination meta, and filter/sort/search state. Concrete stores in
directory/ declare their endpoints and add resource-specific operations.

Write semantics:
  A cache mutation is applied only after the server confirms success, and it
  replaces the record by id in every collection and in `selected` -- records
  are never edited in place. A failure sets `error` and leaves the cache as
  it was; there is nothing to roll back because nothing was written early.

Concurrency:
  There are no locks. Reads are last-response-wins; two concurrent update()
  calls on the same id race, and whichever response resolves last is what
  the cache shows. This is accepted, not hidden: callers that need ordering
  must await one update before issuing the next.

  reset() bumps `generation`. An operation that started under an older
  generation drops its late response instead of repopulating a cache that was
  cleared in the meantime (e.g. a list fetch still in flight at logout).

Layer rule: may import from core/ and auth/permissions.py only.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar
from urllib.parse import quote

from auth.permissions import RoleProvider, require_admin
from core.envelope import Envelope, PaginationMeta
from core.errors import ApiError
from core.events import EventChannel
from core.transport import Transport

logger = logging.getLogger("bizdir.cache")

T = TypeVar("T")

DEFAULT_VIEW = "all"
MINE_VIEW = "mine"

# Filter keys that are not record attributes.
_CONTROL_FILTERS = frozenset({"search", "sort_by", "sort_order"})


@dataclass
class ViewState:
    """One named view. A parameterized view keeps only its latest query."""

    loaded: bool = False
    meta: Optional[PaginationMeta] = None
    params: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def clean_params(params: Optional[Mapping[str, Any]]) -> dict[str, str]:
    """Drop None and "" values; render booleans the way the API expects."""
    out: dict[str, str] = {}
    for key, value in (params or {}).items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            out[key] = "true" if value else "false"
        else:
            out[key] = str(value)
    return out


def form_fields(payload: Mapping[str, Any]) -> dict[str, str]:
    """Flatten a payload into multipart text fields.

    Nested objects and lists travel as JSON strings; numbers and booleans as
    their text form. None values are omitted.
    """
    fields: dict[str, str] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            fields[key] = json.dumps(value)
        elif isinstance(value, bool):
            fields[key] = "true" if value else "false"
        else:
            fields[key] = str(value)
    return fields


def _sort_key(value: Any) -> tuple:
    if isinstance(value, str):
        value = value.lower()
    return (value is None, value if value is not None else 0)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class EntityCacheStore(Generic[T]):
    """Base class for the organizations, users and inquiries caches."""

    resource: str = ""
    record_type: Any = None  # class with from_payload(dict) and an `id` attribute
    label: str = "record"
    collections: tuple[str, ...] = ("items", "mine")
    mine_path: Optional[str] = None
    uniqueness_path: Optional[str] = None  # formatted with candidate=
    update_method: str = "PATCH"
    create_targets: tuple[str, ...] = ("items",)
    prepend_on_create: bool = False
    select_on_create: bool = False
    default_filters: dict[str, Any] = {}
    search_fields: tuple[str, ...] = ()

    def __init__(
        self,
        transport: Transport,
        events: Optional[EventChannel] = None,
        role_provider: Optional[RoleProvider] = None,
    ) -> None:
        self._transport = transport
        self._events = events
        self._role_provider = role_provider
        self.generation = 0
        self._init_state()

    def _init_state(self) -> None:
        self._collections: dict[str, list[T]] = {name: [] for name in self.collections}
        self.selected: Optional[T] = None
        self.views: dict[str, ViewState] = {DEFAULT_VIEW: ViewState(), MINE_VIEW: ViewState()}
        self.last_meta: Optional[PaginationMeta] = None
        self.loading = False
        self.error: Optional[str] = None
        self.filters: dict[str, Any] = dict(self.default_filters)

    def reset(self) -> None:
        """Return to the empty initial state and invalidate in-flight operations."""
        self.generation += 1
        self._init_state()
        logger.info("%s cache reset (generation %d)", self.label, self.generation)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def items(self) -> list[T]:
        return list(self._collections["items"])

    @property
    def mine(self) -> list[T]:
        return list(self._collections["mine"])

    def collection(self, name: str) -> list[T]:
        return list(self._collections.get(name, []))

    def view(self, key: str) -> ViewState:
        return self.views.get(key) or ViewState()

    @property
    def is_initially_loaded(self) -> bool:
        return self.views[DEFAULT_VIEW].loaded

    def set_selected(self, record: Optional[T]) -> None:
        self.selected = record

    def clear_error(self) -> None:
        self.error = None

    # ------------------------------------------------------------------
    # Derived views (recomputed on every call, never stored)
    # ------------------------------------------------------------------

    def set_filters(self, **changes: Any) -> None:
        self.filters.update(changes)

    def set_search(self, query: str) -> None:
        self.filters["search"] = query

    def filtered(self) -> list[T]:
        records = list(self._collections["items"])
        for name, value in self.filters.items():
            if name in _CONTROL_FILTERS or value in (None, "", "ALL"):
                continue
            records = [r for r in records if getattr(r, name, None) == value]
        query = str(self.filters.get("search") or "").lower()
        if query and self.search_fields:
            records = [
                r for r in records if any(query in str(getattr(r, f, None) or "").lower() for f in self.search_fields)
            ]
        sort_by = self.filters.get("sort_by")
        if sort_by:
            descending = self.filters.get("sort_order") == "desc"
            records.sort(key=lambda r: _sort_key(getattr(r, sort_by, None)), reverse=descending)
        return records

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(self, payload: Mapping[str, Any], files: Any = None) -> Envelope:
        def apply(envelope: Envelope) -> None:
            record = self._record_from(envelope)
            self._insert(record, self.create_targets, prepend=self.prepend_on_create)
            if self.select_on_create:
                self.selected = record

        return await self._run(f"Failed to create {self.label}", lambda: self._send_create(payload, files), apply)

    async def update(self, record_id: str, payload: Mapping[str, Any]) -> Envelope:
        return await self._mutate(
            f"Failed to update {self.label}",
            lambda: self._transport.request(self.update_method, self._item_path(record_id), json=dict(payload)),
        )

    async def remove(self, record_id: str) -> Envelope:
        def apply(envelope: Envelope) -> None:
            self._remove_everywhere(str(record_id))

        return await self._run(
            f"Failed to delete {self.label}", lambda: self._transport.delete(self._item_path(record_id)), apply
        )

    async def get_by_id(self, record_id: str) -> Envelope:
        return await self._fetch_one(self._item_path(record_id), f"Failed to fetch {self.label}")

    async def get_by_slug(self, slug: str) -> Envelope:
        return await self._fetch_one(self._item_path(slug), f"Failed to fetch {self.label}")

    async def get_all(self, params: Optional[Mapping[str, Any]] = None) -> Envelope:
        return await self._fetch_view(DEFAULT_VIEW, "items", self.resource, params, f"Failed to fetch {self.label}s")

    async def get_mine(self, params: Optional[Mapping[str, Any]] = None) -> Envelope:
        if self.mine_path is None:
            return Envelope.failure(f"No 'mine' view for {self.label}s")
        return await self._fetch_view(MINE_VIEW, "mine", self.mine_path, params, f"Failed to fetch my {self.label}s")

    async def load_default(self) -> Envelope:
        """The fetch the synchronizer runs once per sign-in."""
        return await self.get_all()

    async def check_uniqueness(self, candidate: str, exclude_id: Optional[str] = None) -> Envelope:
        """Side-channel availability check.

        Runs on every keystroke of a live-validation field, so it never touches
        the shared `loading` / `error` fields; failures come back as an
        envelope with is_unique=False for the caller to handle locally.
        """
        if self.uniqueness_path is None:
            return Envelope.failure(f"{self.label} uniqueness check is not supported", is_unique=False)
        path = self.uniqueness_path.format(candidate=quote(candidate, safe=""))
        try:
            return await self._transport.get(path, params=clean_params({"excludeId": exclude_id}))
        except ApiError as e:
            logger.debug("Uniqueness check for %r failed: %s", candidate, e.message)
            return Envelope.failure(
                e.message or f"Failed to check {self.label} uniqueness", is_unique=False, candidate=candidate
            )

    # ------------------------------------------------------------------
    # Building blocks for subclasses
    # ------------------------------------------------------------------

    def _item_path(self, key: str, suffix: str = "") -> str:
        return f"{self.resource}/{quote(str(key), safe='')}{suffix}"

    def _require_admin(self, action: str) -> None:
        require_admin(self._role_provider, action)

    def _send_create(self, payload: Mapping[str, Any], files: Any) -> Awaitable[Envelope]:
        if files:
            return self._transport.post(self.resource, data=form_fields(payload), files=files)
        return self._transport.post(self.resource, json=dict(payload))

    async def _run(
        self,
        fallback: str,
        call: Callable[[], Awaitable[Envelope]],
        apply: Callable[[Envelope], None],
    ) -> Envelope:
        """Shared loading/error bookkeeping around one remote call."""
        generation = self.generation
        self.error = None
        self.loading = True
        try:
            envelope = await call()
        except ApiError as e:
            if generation != self.generation:
                return Envelope.failure(e.message or fallback)
            self.loading = False
            self.error = e.message or fallback
            logger.info("%s: %s", fallback, self.error)
            return Envelope.failure(self.error)

        if generation != self.generation:
            logger.info("Dropping late %s response received after cache reset", self.label)
            return envelope
        self.loading = False
        if not envelope.success:
            self.error = envelope.message or fallback
            return envelope
        try:
            apply(envelope)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("%s: unexpected payload (%s)", fallback, e)
            self.error = fallback
            return Envelope.failure(fallback)
        return envelope

    async def _mutate(self, fallback: str, call: Callable[[], Awaitable[Envelope]]) -> Envelope:
        """Run a call whose response is the updated record and replace it everywhere."""

        def apply(envelope: Envelope) -> None:
            self._replace_everywhere(self._record_from(envelope))

        return await self._run(fallback, call, apply)

    async def _fetch_one(self, path: str, fallback: str) -> Envelope:
        def apply(envelope: Envelope) -> None:
            self.selected = self._record_from(envelope)

        return await self._run(fallback, lambda: self._transport.get(path), apply)

    async def _fetch_view(
        self,
        view: str,
        collection: str,
        path: str,
        params: Optional[Mapping[str, Any]],
        fallback: str,
    ) -> Envelope:
        query = clean_params(params)

        def apply(envelope: Envelope) -> None:
            self._collections[collection] = self._records_from(envelope)
            self.views[view] = ViewState(loaded=True, meta=envelope.meta, params=query)
            self.last_meta = envelope.meta

        return await self._run(fallback, lambda: self._transport.get(path, params=query), apply)

    def _record_from(self, envelope: Envelope) -> T:
        if not isinstance(envelope.data, dict):
            raise ValueError(f"expected a {self.label} object")
        return self.record_type.from_payload(envelope.data)

    def _records_from(self, envelope: Envelope) -> list[T]:
        if not isinstance(envelope.data, list):
            raise ValueError(f"expected a list of {self.label}s")
        records: list[T] = []
        seen: set[str] = set()
        for payload in envelope.data:
            record = self.record_type.from_payload(payload)
            if record.id in seen:
                continue
            seen.add(record.id)
            records.append(record)
        return records

    def _replace_everywhere(self, record: T) -> None:
        rid = record.id
        for name, records in self._collections.items():
            self._collections[name] = [record if r.id == rid else r for r in records]
        if self.selected is not None and self.selected.id == rid:
            self.selected = record

    def _remove_everywhere(self, record_id: str) -> None:
        for name, records in self._collections.items():
            self._collections[name] = [r for r in records if r.id != record_id]
        if self.selected is not None and self.selected.id == record_id:
            self.selected = None

    def _insert(self, record: T, names: tuple[str, ...], prepend: bool = False) -> None:
        for name in names:
            records = self._collections[name]
            if any(r.id == record.id for r in records):
                self._collections[name] = [record if r.id == record.id else r for r in records]
            elif prepend:
                self._collections[name] = [record, *records]
            else:
                self._collections[name] = [*records, record]
