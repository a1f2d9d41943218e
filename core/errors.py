"""
core/errors.py -- Error taxonomy for remote calls.

Every failure the transport can observe is turned into one ApiError subclass
so stores and the session manager can catch a single base class and surface
`error` + a failure envelope, while the transport itself can still tell a
refreshable 401 apart from a blocked account.

  ValidationError      4xx with per-field messages
  AuthError            401 unauthenticated (403 without a block window)
  BlockedAccountError  blocked account; carries the resumption timestamp and
                       the force-logout directive. Never triggers a refresh.
  NotFoundError        404
  NetworkError         no response received (timeout, DNS, refused)
  ServerError          5xx, or a body that is not an envelope
  AuthorizationError   local role-mirror rejection; no request was sent

Layer rule: no imports from auth/, cache/, directory/, or sync/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import httpx


class ApiError(Exception):
    """Base class for every failure surfaced by the transport."""

    def __init__(self, message: str, status: Optional[int] = None, payload: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload or {}


class ValidationError(ApiError):
    def __init__(self, message: str, status: Optional[int] = 400, payload: Optional[dict] = None) -> None:
        super().__init__(message, status, payload)
        self.fields: dict[str, str] = {}
        for item in self.payload.get("errors") or []:
            if isinstance(item, dict) and item.get("field"):
                self.fields[str(item["field"])] = str(item.get("message", ""))


class AuthError(ApiError):
    """401 from the server.

    refresh_attempted is True once the transport has already run the
    refresh-and-replay protocol for the originating request, so callers such
    as SessionManager.check_auth() know not to try a second refresh.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = 401,
        payload: Optional[dict] = None,
        refresh_attempted: bool = False,
    ) -> None:
        super().__init__(message, status, payload)
        self.refresh_attempted = refresh_attempted


class BlockedAccountError(ApiError):
    def __init__(self, message: str, status: Optional[int] = 403, payload: Optional[dict] = None) -> None:
        super().__init__(message, status, payload)
        raw = self.payload.get("blocked_until", self.payload.get("blockedUntil"))
        self.blocked_until_raw = raw
        self.blocked_until: Optional[datetime] = parse_timestamp(raw)
        self.force_logout = bool(self.payload.get("forceLogout", True))


class NotFoundError(ApiError):
    pass


class NetworkError(ApiError):
    pass


class ServerError(ApiError):
    pass


class AuthorizationError(Exception):
    """Raised by the client-side role mirror before any request is sent."""

    def __init__(self, action: str, required_role: str, actual_role: Optional[str]) -> None:
        super().__init__(f"{action} requires the {required_role} role")
        self.action = action
        self.required_role = required_role
        self.actual_role = actual_role


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (trailing Z allowed) into an aware UTC datetime.

    Returns None for None, empty strings, and anything unparseable -- a block
    window the client cannot read is treated as open-ended by the caller.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        # Epoch milliseconds, as a JS Date serializes via getTime().
        dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _message_from(payload: dict, fallback: str) -> str:
    message = payload.get("message")
    if isinstance(message, list):
        # Class-validator style bodies send a list of messages.
        return "; ".join(str(m) for m in message) or fallback
    if isinstance(message, dict):
        return str(message.get("message") or fallback)
    if message:
        return str(message)
    return fallback


def _body_of(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    if not isinstance(body, dict):
        return {}
    # Some servers nest the real body under "message" when raising with an object.
    nested = body.get("message")
    if isinstance(nested, dict):
        merged = dict(nested)
        merged.setdefault("success", body.get("success", False))
        return merged
    return body


def _carries_block_window(status: int, payload: dict) -> bool:
    has_window = "blocked_until" in payload or "blockedUntil" in payload
    if status == 403:
        return has_window or bool(payload.get("forceLogout"))
    if status == 401:
        return payload.get("blocked_until", payload.get("blockedUntil")) is not None
    return False


def classify_response(response: httpx.Response) -> ApiError:
    """Map a non-2xx httpx response onto the error taxonomy."""
    status = response.status_code
    payload = _body_of(response)
    if _carries_block_window(status, payload):
        return BlockedAccountError(_message_from(payload, "Your account is temporarily blocked"), status, payload)
    if status == 401:
        return AuthError(_message_from(payload, "Authentication required"), status, payload)
    if status == 403:
        return AuthError(_message_from(payload, "Access denied"), status, payload)
    if status == 404:
        return NotFoundError(_message_from(payload, "Resource not found"), status, payload)
    if 400 <= status < 500:
        return ValidationError(_message_from(payload, "Request rejected"), status, payload)
    return ServerError(_message_from(payload, f"Server error ({status})"), status, payload)
