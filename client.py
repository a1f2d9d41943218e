"""
client.py -- Composition root for the directory client.

DirectoryClient builds every service exactly once and wires them together:

    Settings -> Transport -> SessionManager (bound as the refresh and block handlers)
             -> OrganizationsStore / UsersStore / InquiriesStore
             -> CrossStoreSynchronizer (subscribed to the event channel)

Nothing else in the package constructs a Transport or a store; tests and the
CLI go through this class (or build the same graph by hand).

Usage:
    async with DirectoryClient() as client:
        await client.session.login(LoginCredentials(email=..., password=...))
        await client.synchronizer.wait_idle()
        print(client.organizations.items)
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from auth.session import Clock, Navigator, SessionManager
from cache.store import PersistedStateStore
from core.config import Settings, get_settings
from core.events import EventChannel
from core.transport import Transport
from directory.inquiries import InquiriesStore
from directory.organizations import OrganizationsStore
from directory.users import UsersStore
from sync.synchronizer import CrossStoreSynchronizer

logger = logging.getLogger("bizdir.client")


class DirectoryClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        state_store: Optional[PersistedStateStore] = None,
        navigate: Optional[Navigator] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.events = EventChannel()
        self.transport = Transport(self.settings, http_transport=http_transport)
        self.state_store = state_store if state_store is not None else PersistedStateStore(self.settings.state_db_url)
        self.session = SessionManager(
            self.transport,
            self.events,
            self.state_store,
            navigate=navigate,
            login_path=self.settings.login_path,
            clock=clock,
        )
        self.transport.set_refresh_handler(self.session.refresh_token)
        self.transport.set_block_handler(self.session.force_logout)

        role = self.session.current_role
        self.organizations = OrganizationsStore(self.transport, self.events, role, state_store=self.state_store)
        self.users = UsersStore(self.transport, self.events, role)
        self.inquiries = InquiriesStore(
            self.transport, self.events, role, page_limit=self.settings.inquiries_page_limit
        )
        self.synchronizer = CrossStoreSynchronizer(
            self.events, self.session, [self.organizations, self.users, self.inquiries]
        )
        self.synchronizer.attach()

    async def start(self, validate: bool = True) -> bool:
        """Restore the persisted session and, optionally, confirm it with the server.

        Returns whether the client ends up authenticated.
        """
        await self.session.restore()
        if validate and self.session.authenticated:
            ok = await self.session.check_auth()
            logger.info("Persisted session %s", "confirmed" if ok else "rejected")
            return ok
        return self.session.authenticated

    async def aclose(self) -> None:
        self.synchronizer.detach()
        await self.synchronizer.wait_idle()
        await self.transport.aclose()
        self.state_store.close()

    async def __aenter__(self) -> "DirectoryClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
