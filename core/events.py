"""
core/events.py -- Typed in-process event channel.

The session manager announces its transitions here and entity stores announce
identity-relevant record edits here; the cross-store synchronizer is the
dedicated subscriber. Publishers never reach into another store directly.

Handlers may be plain functions or coroutines. publish() awaits them in
subscription order. A failing handler is logged and skipped so one broken
subscriber cannot abort the publisher's own state transition.

Layer rule: no imports from auth/, cache/, directory/, or sync/. Payloads that
carry domain objects are typed as Any here for that reason.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger("bizdir.events")

Handler = Callable[[Any], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class AuthTransition:
    """The session's `authenticated` flag changed value."""

    previous: bool
    authenticated: bool
    identity: Optional[Any] = None  # auth.models.Identity


@dataclass(frozen=True)
class IdentityRecordUpdated:
    """A users-cache mutation succeeded; fields holds the server's new values."""

    record_id: str
    fields: Mapping[str, Any] = field(default_factory=dict)


class EventChannel:
    """Publish/subscribe keyed on the event's class."""

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        """Register handler for event_type. Returns an unsubscribe callable."""
        self._subscribers[event_type].append(handler)

        def _unsubscribe() -> None:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def subscriber_count(self, event_type: type) -> int:
        return len(self._subscribers.get(event_type, []))

    async def publish(self, event: Any) -> None:
        # Snapshot so a handler that unsubscribes mid-dispatch does not skip a sibling.
        for handler in list(self._subscribers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)
