"""Unit tests for configuration, error helpers and payload mapping.

Covers:
- Settings URL normalization and validation
- parse_timestamp() formats; classify_response() block-window detection
- Identity / entity record mapping from server payloads
"""

from datetime import datetime, timezone

import httpx
import pytest
from pydantic import ValidationError as PydanticValidationError

from auth.models import Identity, SessionState, normalize_role
from core.config import Settings
from core.errors import AuthError, BlockedAccountError, classify_response, parse_timestamp
from directory.models import Inquiry, Organization, UserRecord, replace_fields

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def test_settings_join_base_url_and_prefix():
    settings = Settings(api_base_url="http://api.example.com/", api_prefix="api/", _env_file=None)
    assert settings.api_root == "http://api.example.com/api"


def test_settings_allow_empty_prefix():
    settings = Settings(api_base_url="http://api.example.com", api_prefix="", _env_file=None)
    assert settings.api_root == "http://api.example.com"


def test_settings_reject_non_positive_timeout():
    with pytest.raises(PydanticValidationError):
        Settings(request_timeout=0, _env_file=None)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def test_parse_timestamp_accepts_zulu_and_epoch_ms():
    expected = datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("2030-01-01T00:00:00Z") == expected
    assert parse_timestamp("2030-01-01T00:00:00.000Z") == expected
    assert parse_timestamp(int(expected.timestamp() * 1000)) == expected


def test_parse_timestamp_rejects_garbage():
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("next tuesday") is None


def _response(status: int, body: dict) -> httpx.Response:
    return httpx.Response(status, json=body, request=httpx.Request("GET", "http://testserver/api/x"))


def test_403_with_window_is_blocked():
    error = classify_response(_response(403, {"message": "Blocked", "blocked_until": "2030-01-01T00:00:00Z"}))
    assert isinstance(error, BlockedAccountError)
    assert error.force_logout is True


def test_403_with_force_logout_only_is_open_ended_block():
    error = classify_response(_response(403, {"message": "Blocked", "forceLogout": True}))
    assert isinstance(error, BlockedAccountError)
    assert error.blocked_until is None


def test_401_with_null_window_is_plain_auth_error():
    error = classify_response(_response(401, {"message": "Unauthorized", "blocked_until": None}))
    assert type(error) is AuthError


def test_list_messages_are_joined():
    error = classify_response(_response(400, {"message": ["name should not be empty", "slug must be a string"]}))
    assert error.message == "name should not be empty; slug must be a string"


# ---------------------------------------------------------------------------
# Payload mapping
# ---------------------------------------------------------------------------


def test_role_is_normalized_from_string_or_object():
    assert normalize_role("ADMIN") == "admin"
    assert normalize_role({"id": 1, "name": "Author"}) == "author"
    assert normalize_role(None) is None


def test_identity_from_camel_case_payload():
    identity = Identity.from_payload({"id": 5, "email": "a@b.c", "username": "ab", "emailVerified": True, "role": "SELLER"})
    assert identity == Identity(id="5", email="a@b.c", display_name="ab", role="seller", email_verified=True)


def test_persisted_subset_excludes_request_scoped_fields():
    state = SessionState(authenticated=False, loading=True, error="x", blocked=True)
    assert state.persisted() == {
        "identity": None,
        "authenticated": False,
        "verified": None,
        "requires_password_reset": False,
    }


def test_unknown_fields_are_kept_in_extra():
    org = Organization.from_payload({"id": 3, "name": "Acme", "slug": "acme", "logo_url": "/l.png"})
    assert org.id == "3"
    assert org.extra == {"logo_url": "/l.png"}


def test_user_record_maps_camel_case_and_role_object():
    user = UserRecord.from_payload(
        {"id": 9, "username": "u", "email": "u@x", "role": {"name": "Admin"}, "isTemporaryPassword": True}
    )
    assert user.role == "admin"
    assert user.is_temporary_password is True
    assert user.extra == {}


def test_replace_fields_returns_new_record():
    inquiry = Inquiry.from_payload({"id": 1, "full_name": "A", "email": "a@x", "message": "hi"})
    updated = replace_fields(inquiry, status="closed")
    assert inquiry.status == "new"
    assert updated.status == "closed"
