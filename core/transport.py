"""
core/transport.py -- All outbound HTTP, wrapped in the interceptor chain.

Every store and the session manager talk to the API through one Transport
instance. It owns the httpx.AsyncClient, whose cookie jar carries the opaque
same-origin session credential -- the library never copies it into bodies or
headers.

Request stage:
  Content-Type: application/json is set on every call except form/multipart
  payloads, where httpx must write its own boundary framing.

Response stage (retry-once protocol):
  A 401 on a non-exempt path whose RequestContext has not been retried runs
  the shared credential refresh, then replays the request exactly once with a
  derived context (retried=True). A 401 on the replay propagates. The auth
  endpoints themselves are exempt so a failing login or refresh can never
  recurse into another refresh.

Single-flight refresh:
  Concurrent 401s that arrive before a refresh completes all await the same
  asyncio.Task. Issuing N refresh calls against a rotating refresh credential
  lets the siblings invalidate each other and log the user out spuriously.

Force logout:
  A blocked-account response (403 with forceLogout) on any non-auth path is
  passed to the injected block handler before it is raised, so the session
  ends even when the rejected call came from a cache store.

Layer rule: no imports from auth/, cache/, directory/, or sync/. The refresh
handler (SessionManager.refresh_token) and the block handler
(SessionManager.force_logout) are injected by the composition root.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from core.config import Settings
from core.envelope import Envelope
from core.errors import ApiError, AuthError, BlockedAccountError, NetworkError, ServerError, classify_response

logger = logging.getLogger("bizdir.transport")

# Auth endpoints never trigger the refresh protocol.
AUTH_EXEMPT_PATHS: tuple[str, ...] = (
    "/auth/login",
    "/auth/register",
    "/auth/refresh-token",
    "/auth/logout",
    "/auth/verify",
    "/auth/resend-verification",
    "/auth/forgot-password",
    "/auth/reset-password",
)

RefreshHandler = Callable[[], Awaitable[bool]]
BlockHandler = Callable[[BlockedAccountError], Awaitable[None]]


@dataclass(frozen=True)
class RequestContext:
    """Everything needed to send (and replay) one outbound call.

    Frozen: the retry guard is a field of the value, and the replay is a new
    value derived with dataclasses.replace(). Nothing is attached after the
    fact and nothing is shared between requests.
    """

    method: str
    path: str
    params: Optional[dict[str, Any]] = None
    json: Any = None
    data: Optional[dict[str, Any]] = None
    files: Any = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    retried: bool = False

    @property
    def is_form(self) -> bool:
        return self.files is not None or self.data is not None


def is_refresh_exempt(path: str) -> bool:
    bare = path.split("?", 1)[0].rstrip("/")
    return any(bare == p or bare.startswith(p + "/") for p in AUTH_EXEMPT_PATHS)


class Transport:
    """Async HTTP client with the request/response interceptor chain.

    Usage:
        transport = Transport(settings)
        transport.set_refresh_handler(session.refresh_token)
        envelope = await transport.get("/companies", params={"page": 1})
        await transport.aclose()
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.api_root,
            timeout=settings.request_timeout,
            transport=http_transport,
        )
        self._refresh_handler: Optional[RefreshHandler] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._block_handler: Optional[BlockHandler] = None

    def set_refresh_handler(self, handler: Optional[RefreshHandler]) -> None:
        self._refresh_handler = handler

    def set_block_handler(self, handler: Optional[BlockHandler]) -> None:
        self._block_handler = handler

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None

    # ------------------------------------------------------------------
    # Public verbs
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        data: Optional[dict[str, Any]] = None,
        files: Any = None,
    ) -> Envelope:
        """Send one call through the interceptor chain and parse its envelope.

        Raises an ApiError subclass on any failure; callers in the store layer
        catch ApiError and turn it into their own `error` state.
        """
        ctx = RequestContext(method=method.upper(), path=path, params=params, json=json, data=data, files=files)
        return await self._dispatch(ctx)

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Envelope:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None, **kwargs: Any) -> Envelope:
        return await self.request("POST", path, json=json, **kwargs)

    async def put(self, path: str, json: Any = None, **kwargs: Any) -> Envelope:
        return await self.request("PUT", path, json=json, **kwargs)

    async def patch(self, path: str, json: Any = None, **kwargs: Any) -> Envelope:
        return await self.request("PATCH", path, json=json, **kwargs)

    async def delete(self, path: str, params: Optional[dict[str, Any]] = None) -> Envelope:
        return await self.request("DELETE", path, params=params)

    # ------------------------------------------------------------------
    # Single-flight refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        """Run the bound refresh handler, sharing one in-flight attempt.

        The first caller creates the task; every caller that arrives before it
        completes awaits the same task. shield() keeps one caller's
        cancellation from cancelling the refresh its siblings depend on.
        """
        if self._refresh_handler is None:
            logger.warning("Credential refresh requested but no refresh handler is bound")
            return False
        task = self._refresh_task
        if task is None:
            logger.info("Starting credential refresh")
            task = asyncio.ensure_future(self._run_refresh())
            self._refresh_task = task
            task.add_done_callback(self._release_refresh)
        else:
            logger.debug("Joining in-flight credential refresh")
        return await asyncio.shield(task)

    async def _run_refresh(self) -> bool:
        assert self._refresh_handler is not None
        try:
            ok = bool(await self._refresh_handler())
        except ApiError as e:
            logger.warning("Credential refresh raised %s: %s", type(e).__name__, e.message)
            ok = False
        logger.info("Credential refresh %s", "succeeded" if ok else "failed")
        return ok

    def _release_refresh(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    # ------------------------------------------------------------------
    # Interceptor chain
    # ------------------------------------------------------------------

    def _headers(self, ctx: RequestContext) -> dict[str, str]:
        if ctx.is_form:
            return {}
        return {"Content-Type": "application/json"}

    async def _send(self, ctx: RequestContext) -> httpx.Response:
        try:
            return await self._client.request(
                ctx.method,
                ctx.path,
                params=ctx.params,
                json=ctx.json,
                data=ctx.data,
                files=ctx.files,
                headers=self._headers(ctx),
            )
        except httpx.TimeoutException as e:
            logger.warning("%s %s [%s] timed out", ctx.method, ctx.path, ctx.request_id)
            raise NetworkError("Request timed out") from e
        except httpx.TransportError as e:
            logger.warning("%s %s [%s] failed: %s", ctx.method, ctx.path, ctx.request_id, e)
            raise NetworkError("Network error -- no response received") from e

    async def _dispatch(self, ctx: RequestContext) -> Envelope:
        response = await self._send(ctx)
        logger.debug(
            "%s %s -> %d [%s%s]",
            ctx.method,
            ctx.path,
            response.status_code,
            ctx.request_id,
            " replay" if ctx.retried else "",
        )

        if response.status_code == 401 and not ctx.retried and not is_refresh_exempt(ctx.path):
            error = classify_response(response)
            if isinstance(error, BlockedAccountError):
                await self._force_logout(ctx, error)
                raise error
            replay = replace(ctx, retried=True)
            if await self.refresh():
                return await self._dispatch(replay)
            raise AuthError(error.message, error.status, error.payload, refresh_attempted=True)

        if response.status_code >= 400:
            error = classify_response(response)
            if isinstance(error, AuthError) and ctx.retried:
                error.refresh_attempted = True
            elif isinstance(error, BlockedAccountError):
                await self._force_logout(ctx, error)
            raise error

        return self._parse(ctx, response)

    async def _force_logout(self, ctx: RequestContext, error: BlockedAccountError) -> None:
        """Hand a server-issued force-logout to the block handler before raising.

        The auth endpoints report blocks to their own callers, so they are
        skipped here.
        """
        if not error.force_logout or self._block_handler is None or is_refresh_exempt(ctx.path):
            return
        logger.warning(
            "%s %s [%s] forced logout: account blocked until %s",
            ctx.method,
            ctx.path,
            ctx.request_id,
            error.blocked_until_raw,
        )
        await self._block_handler(error)

    def _parse(self, ctx: RequestContext, response: httpx.Response) -> Envelope:
        if response.status_code == 204 or not response.content:
            return Envelope(success=True)
        try:
            body = response.json()
        except ValueError as e:
            raise ServerError(f"Malformed response from {ctx.path}", response.status_code) from e
        if not isinstance(body, dict):
            raise ServerError(f"Unexpected response shape from {ctx.path}", response.status_code)
        try:
            return Envelope.model_validate(body)
        except PydanticValidationError as e:
            raise ServerError(f"Unexpected response shape from {ctx.path}", response.status_code, body) from e

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        if self._refresh_task is not None:
            await asyncio.gather(self._refresh_task, return_exceptions=True)
        await self._client.aclose()

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
