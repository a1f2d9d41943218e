"""
sync/synchronizer.py -- Keeps the entity caches consistent with the session.

CrossStoreSynchronizer is the one place that knows both sides:
  AuthTransition false -> true   prime every store that has not loaded yet
  AuthTransition true  -> false  reset every store (no cross-session leakage)
  IdentityRecordUpdated          copy username/email/role onto the session
                                 identity when the edited user is signed in

Stores and the session manager never import each other; they only publish.

Layer rule: may import from core/, auth/ and cache/. Nothing imports sync/
except the composition root.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable, Optional

from auth.session import SessionManager
from cache.entity import EntityCacheStore
from core.errors import AuthorizationError
from core.events import AuthTransition, EventChannel, IdentityRecordUpdated

logger = logging.getLogger("bizdir.sync")


class CrossStoreSynchronizer:
    """Subscriber that reacts to session and users-cache events.

    Usage:
        sync = CrossStoreSynchronizer(events, session, [orgs, users, inquiries])
        sync.attach()
        ...
        sync.detach()
    """

    def __init__(
        self,
        events: EventChannel,
        session: SessionManager,
        stores: Iterable[EntityCacheStore],
    ) -> None:
        self._events = events
        self._session = session
        self._stores = list(stores)
        self._unsubscribers: list[Callable[[], None]] = []
        self._priming: Optional[asyncio.Task] = None

    @property
    def attached(self) -> bool:
        return bool(self._unsubscribers)

    @property
    def priming(self) -> bool:
        return self._priming is not None and not self._priming.done()

    def attach(self) -> None:
        if self.attached:
            return
        self._unsubscribers = [
            self._events.subscribe(AuthTransition, self.on_auth_transition),
            self._events.subscribe(IdentityRecordUpdated, self.on_identity_record_updated),
        ]
        logger.debug("Synchronizer attached to %d stores", len(self._stores))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self.priming:
            self._priming.cancel()

    async def wait_idle(self) -> None:
        """Wait for a scheduled priming pass to finish (or be cancelled)."""
        if self._priming is not None:
            await asyncio.gather(self._priming, return_exceptions=True)

    def on_auth_transition(self, event: AuthTransition) -> None:
        # Own task: a sign-in announced from inside the refresh task must not
        # await store requests that may join that same refresh.
        if event.authenticated and not event.previous:
            if not self.priming:
                self._priming = asyncio.ensure_future(self.prime())
        elif event.previous and not event.authenticated:
            if self.priming:
                self._priming.cancel()
            self.reset_all()

    async def prime(self) -> None:
        """Run load_default() once on every store not yet initially loaded."""
        pending = [store for store in self._stores if not store.is_initially_loaded]
        if not pending:
            return
        logger.info("Priming %d caches after sign-in", len(pending))
        results = await asyncio.gather(*(store.load_default() for store in pending), return_exceptions=True)
        for store, result in zip(pending, results):
            if isinstance(result, AuthorizationError):
                logger.debug("Skipped priming %s cache: %s", store.label, result)
            elif isinstance(result, BaseException):
                logger.error("Priming %s cache failed", store.label, exc_info=result)
            elif not result.success:
                logger.warning("Priming %s cache failed: %s", store.label, result.message)

    def reset_all(self) -> None:
        for store in self._stores:
            store.reset()
        logger.info("Reset %d caches after sign-out", len(self._stores))

    def on_identity_record_updated(self, event: IdentityRecordUpdated) -> Optional[bool]:
        identity = self._session.identity
        if identity is None or identity.id != event.record_id:
            return None
        fields = event.fields
        return self._session.apply_identity_patch(
            event.record_id,
            username=fields.get("username"),
            email=fields.get("email"),
            role=fields.get("role"),
        )
