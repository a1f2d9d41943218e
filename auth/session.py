"""
auth/session.py -- The session manager: authentication state machine.

SessionManager is the only writer of SessionState. Every operation clears
`error` on entry and holds `loading` until it resolves, catches ApiError, and
answers with an Envelope -- callers never see a network exception.

State machine:
  Anonymous     -> Authenticated  login / refresh / profile success
  Authenticated -> Anonymous      logout, refresh failure, irrecoverable
                                  check_auth failure
  any           -> Blocked        blocked login / profile, or a force-logout
                                  on any API call (blocked_until kept)
  Blocked       -> re-validated   window elapsed, noticed on the next
                                  check_auth() / get_profile(); no timer

Every change of `authenticated` is published on the event channel as an
AuthTransition; the cross-store synchronizer reacts to it. Every change of
the persisted subset is written to the "session" blob.

requires_password_reset follows the server: the login envelope's
requiresPasswordReset flag, or the identity's isTemporaryPassword on profile
and refresh. set_password() clears it.

Layer rule: may import from core/ and cache/store.py (the persisted-state
repository). No imports from directory/ or sync/.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union
from urllib.parse import quote

from auth.models import Identity, LoginCredentials, RegistrationData, SessionState, normalize_role
from cache.store import SESSION_BLOB, PersistedStateStore
from core.envelope import Envelope
from core.errors import ApiError, AuthError, BlockedAccountError
from core.events import AuthTransition, EventChannel
from core.transport import Transport

logger = logging.getLogger("bizdir.session")

Navigator = Callable[[str], None]
Clock = Callable[[], datetime]


def _log_navigation(path: str) -> None:
    logger.info("Redirecting to login entry point %s", path)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _identity_from(envelope: Optional[Envelope]) -> Optional[Identity]:
    if envelope is None or not envelope.success or not isinstance(envelope.data, dict):
        return None
    try:
        return Identity.from_payload(envelope.data)
    except (KeyError, TypeError, ValueError):
        logger.warning("Server returned a user payload without an id")
        return None


class SessionManager:
    """Owns the session state machine.

    Usage:
        session = SessionManager(transport, events, state_store)
        transport.set_refresh_handler(session.refresh_token)
        await session.restore()
        await session.login(LoginCredentials(email="a@b.c", password="..."))
    """

    def __init__(
        self,
        transport: Transport,
        events: EventChannel,
        state_store: Optional[PersistedStateStore] = None,
        navigate: Optional[Navigator] = None,
        login_path: str = "/",
        clock: Optional[Clock] = None,
    ) -> None:
        self._transport = transport
        self._events = events
        self._state_store = state_store
        self._navigate = navigate or _log_navigation
        self._login_path = login_path
        self._clock = clock or _utcnow
        self._state = SessionState()

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        """A copy of the current state; mutating it does not affect the session."""
        return replace(self._state)

    @property
    def identity(self) -> Optional[Identity]:
        return self._state.identity

    @property
    def authenticated(self) -> bool:
        return self._state.authenticated

    @property
    def loading(self) -> bool:
        return self._state.loading

    @property
    def error(self) -> Optional[str]:
        return self._state.error

    @property
    def verified(self) -> Optional[bool]:
        return self._state.verified

    @property
    def blocked(self) -> bool:
        return self._state.blocked

    @property
    def blocked_until(self) -> Optional[datetime]:
        return self._state.blocked_until

    @property
    def requires_password_reset(self) -> bool:
        return self._state.requires_password_reset

    def current_role(self) -> Optional[str]:
        return self._state.identity.role if self._state.identity else None

    def is_blocked_now(self) -> bool:
        """True while a block is in force; an open-ended block never elapses."""
        if not self._state.blocked:
            return False
        until = self._state.blocked_until
        return until is None or self._clock() < until

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def login(self, credentials: Union[LoginCredentials, dict]) -> Envelope:
        payload = credentials.to_payload() if isinstance(credentials, LoginCredentials) else dict(credentials)
        self._begin()
        try:
            envelope = await self._transport.post("/auth/login", json=payload)
        except BlockedAccountError as e:
            logger.warning("Login rejected: account blocked until %s", e.blocked_until_raw)
            await self._clear(blocked=True, blocked_until=e.blocked_until)
            return Envelope.failure(e.message, blocked_until=e.blocked_until_raw, forceLogout=e.force_logout)
        except ApiError as e:
            message = e.message or "Login failed"
            await self._clear(error=message)
            return Envelope.failure(message)

        identity = _identity_from(envelope)
        if identity is None:
            await self._clear(error=envelope.message or "Login failed")
            return envelope
        await self._authenticate(identity, requires_password_reset=envelope.extra("requiresPasswordReset") is True)
        logger.info("Logged in as user %s", identity.id)
        return envelope

    async def logout(self) -> None:
        """Best-effort remote logout, then unconditional reset to anonymous."""
        self._state.loading = True
        if self._state.authenticated:
            try:
                await self._transport.post("/auth/logout")
            except ApiError as e:
                logger.warning("Remote logout failed (%s); clearing local session anyway", e.message)
        await self._clear()

    async def register(self, data: Union[RegistrationData, dict]) -> Envelope:
        """Create an account. The caller is not signed in as a side effect."""
        payload = data.to_payload() if isinstance(data, RegistrationData) else dict(data)
        return await self._simple_call("POST", "/auth/register", payload, "Registration failed")

    async def get_profile(self) -> Envelope:
        self._begin()
        self._expire_block_window()
        try:
            envelope = await self._transport.get("/auth/profile")
        except BlockedAccountError as e:
            await self._clear(blocked=True, blocked_until=e.blocked_until)
            return Envelope.failure(e.message, blocked_until=e.blocked_until_raw, forceLogout=e.force_logout)
        except ApiError as e:
            return self._fail(e.message or "Failed to fetch profile")

        identity = _identity_from(envelope)
        if identity is None:
            self._fail(envelope.message or "Failed to fetch profile")
            return envelope
        await self._authenticate(identity)
        return envelope

    async def check_auth(self) -> bool:
        """Validate the ambient credential, falling back to one refresh.

        When the profile call already went through the transport's refresh
        protocol (AuthError.refresh_attempted), the fallback is skipped: the
        refresh either failed -- and refresh_token() already cleared the
        session -- or succeeded and the replay was still rejected.
        """
        self._begin()
        self._expire_block_window()
        refresh_attempted = False
        try:
            envelope = await self._transport.get("/auth/profile")
        except BlockedAccountError as e:
            await self._clear(blocked=True, blocked_until=e.blocked_until)
            return False
        except ApiError as e:
            logger.info("Profile check failed: %s", e.message)
            refresh_attempted = isinstance(e, AuthError) and e.refresh_attempted
            envelope = None

        identity = _identity_from(envelope)
        if identity is not None:
            await self._authenticate(identity)
            return True
        if refresh_attempted:
            await self._clear()
            return False
        ok = await self._transport.refresh()
        self._state.loading = False
        return ok

    async def refresh_token(self) -> bool:
        """Exchange the refresh credential for a renewed session.

        Bound into the transport as its refresh handler; callers that want the
        single-flight guarantee go through Transport.refresh() instead of
        calling this directly. Failure clears the session and navigates to
        the login entry point.
        """
        try:
            envelope = await self._transport.post("/auth/refresh-token")
        except BlockedAccountError as e:
            await self._clear(blocked=True, blocked_until=e.blocked_until)
            self._navigate(self._login_path)
            return False
        except ApiError as e:
            logger.warning("Credential refresh rejected: %s", e.message)
            envelope = None

        identity = _identity_from(envelope)
        if identity is None:
            await self._clear()
            self._navigate(self._login_path)
            return False
        await self._authenticate(identity)
        return True

    async def force_logout(self, error: BlockedAccountError) -> None:
        """End the session after the server revoked it for a blocked account.

        Bound into the transport as its block handler, so a force-logout on
        any API call lands here. No navigation: the caller shows the block.
        """
        logger.warning("Server forced logout: account blocked until %s", error.blocked_until_raw)
        await self._clear(blocked=True, blocked_until=error.blocked_until)

    # ------------------------------------------------------------------
    # Verification and password reset
    # ------------------------------------------------------------------

    async def verify_email(self, token: str) -> Envelope:
        envelope = await self._simple_call("GET", f"/auth/verify/{quote(token, safe='')}", None, "Email verification failed")
        if envelope.success:
            self._state.verified = True
            if self._state.identity is not None:
                self._state.identity = replace(self._state.identity, email_verified=True)
            self._persist()
        return envelope

    async def resend_verification(self, email: str) -> Envelope:
        return await self._simple_call(
            "POST", "/auth/resend-verification", {"email": email}, "Failed to resend verification email"
        )

    async def forgot_password(self, email: str) -> Envelope:
        return await self._simple_call("POST", "/auth/forgot-password", {"email": email}, "Failed to send reset email")

    async def reset_password(self, token: str, password: str) -> Envelope:
        return await self._simple_call(
            "POST", f"/auth/reset-password/{quote(token, safe='')}", {"password": password}, "Password reset failed"
        )

    async def set_password(self, new_password: str) -> Envelope:
        """Replace a temporary password for the signed-in user."""
        self._begin()
        try:
            envelope = await self._transport.post("/auth/reset", json={"newPassword": new_password})
        except ApiError as e:
            return self._fail(e.message or "Password reset failed")

        identity = _identity_from(envelope)
        if identity is None:
            self._fail(envelope.message or "Password reset failed")
            return envelope
        self._state.identity = replace(identity, is_temporary_password=False)
        self._state.requires_password_reset = False
        self._state.loading = False
        self._persist()
        logger.info("Temporary password replaced for user %s", identity.id)
        return envelope

    def clear_error(self) -> None:
        self._state.error = None

    # ------------------------------------------------------------------
    # Startup and synchronizer hooks
    # ------------------------------------------------------------------

    async def restore(self) -> None:
        """Load the persisted subset. A missing or unreadable blob means anonymous."""
        if self._state_store is None:
            return
        blob = self._state_store.load(SESSION_BLOB)
        identity: Optional[Identity] = None
        raw_identity = blob.get("identity")
        if isinstance(raw_identity, dict):
            try:
                identity = Identity.from_payload(raw_identity)
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring unreadable persisted identity")
        authenticated = bool(blob.get("authenticated")) and identity is not None
        verified = blob.get("verified")
        previous = self._state.authenticated
        self._state = SessionState(
            identity=identity if authenticated else None,
            authenticated=authenticated,
            verified=verified if isinstance(verified, bool) else None,
            requires_password_reset=authenticated and blob.get("requires_password_reset") is True,
        )
        if authenticated:
            logger.info("Restored persisted session for user %s", identity.id)
        await self._announce(previous)

    def apply_identity_patch(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        role: Any = None,
    ) -> bool:
        """Copy edited profile fields onto the live identity without a fetch.

        The one write into the session from outside its own operations; only
        the cross-store synchronizer calls it. Returns False when user_id is
        not the signed-in user or nothing changed.
        """
        identity = self._state.identity
        if identity is None or identity.id != str(user_id):
            return False
        changes: dict[str, Any] = {}
        if username is not None and username != identity.display_name:
            changes["display_name"] = username
        if email is not None and email != identity.email:
            changes["email"] = email
        normalized = normalize_role(role)
        if normalized is not None and normalized != identity.role:
            changes["role"] = normalized
        if not changes:
            return False
        self._state.identity = replace(identity, **changes)
        self._persist()
        logger.info("Identity %s updated from users cache: %s", identity.id, sorted(changes))
        return True

    # ------------------------------------------------------------------
    # Internal transitions
    # ------------------------------------------------------------------

    def _begin(self) -> None:
        self._state.error = None
        self._state.loading = True

    def _fail(self, message: str) -> Envelope:
        self._state.loading = False
        self._state.error = message
        return Envelope.failure(message)

    def _expire_block_window(self) -> None:
        if self._state.blocked and not self.is_blocked_now():
            logger.info("Block window elapsed at %s; re-validating session", self._state.blocked_until)
            self._state.blocked = False
            self._state.blocked_until = None

    async def _simple_call(self, method: str, path: str, payload: Optional[dict], fallback: str) -> Envelope:
        self._begin()
        try:
            envelope = await self._transport.request(method, path, json=payload)
        except ApiError as e:
            return self._fail(e.message or fallback)
        self._state.loading = False
        if not envelope.success:
            self._state.error = envelope.message or fallback
        return envelope

    async def _authenticate(self, identity: Identity, requires_password_reset: bool = False) -> None:
        previous = self._state.authenticated
        self._state.identity = identity
        self._state.authenticated = True
        self._state.verified = identity.email_verified
        self._state.requires_password_reset = requires_password_reset or identity.is_temporary_password
        self._state.blocked = False
        self._state.blocked_until = None
        self._state.loading = False
        self._state.error = None
        self._persist()
        await self._announce(previous)

    async def _clear(
        self,
        *,
        blocked: bool = False,
        blocked_until: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> None:
        previous = self._state.authenticated
        self._state = SessionState(error=error, blocked=blocked, blocked_until=blocked_until)
        self._persist()
        await self._announce(previous)

    async def _announce(self, previous: bool) -> None:
        current = self._state.authenticated
        if previous == current:
            return
        logger.info("Session %s", "authenticated" if current else "signed out")
        await self._events.publish(
            AuthTransition(previous=previous, authenticated=current, identity=self._state.identity)
        )

    def _persist(self) -> None:
        if self._state_store is not None:
            self._state_store.save(SESSION_BLOB, self._state.persisted())
