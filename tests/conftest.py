"""
tests/conftest.py -- Stub directory backend and client fixtures.

This module provides:
  - StubBackend: in-process state for a small FastAPI replica of the
    directory API (cookie sessions, rotating refresh tokens, blocked accounts,
    companies / users / contacts resources, per-route call counters)
  - build_app(): the FastAPI app serving that state under /api
  - make_client / client: DirectoryClients wired to the app through
    httpx.ASGITransport, sharing one in-memory state store
  - admin_client / seller_client: the same client, already signed in

Design: ASGITransport runs the app inside the test's own event loop, so an
asyncio.Event on the backend (list_gate) can hold a response open while the
test drives the client, and the refresh endpoint's small delay reliably lets
concurrent 401s pile up behind one refresh.

Persisted state uses PersistedStateStore("") (in-memory blobs) so tests never
touch the developer's state database.
"""

from __future__ import annotations

import asyncio
import secrets
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import pytest
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from auth.models import LoginCredentials
from cache.store import PersistedStateStore
from client import DirectoryClient
from core.config import Settings

ADMIN = LoginCredentials(email="admin@example.com", password="admin-pass")
SELLER = LoginCredentials(email="seller@example.com", password="seller-pass")

# ---------------------------------------------------------------------------
# Stub backend state
# ---------------------------------------------------------------------------


class Reject(Exception):
    """Raised by stub routes; rendered as a failure envelope."""

    def __init__(self, status: int, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.extra = extra


class StubBackend:
    def __init__(self) -> None:
        self.users: dict[str, dict] = {
            "1": {"id": 1, "username": "admin", "email": "admin@example.com", "role": "admin", "emailVerified": True},
            "2": {"id": 2, "username": "author", "email": "author@example.com", "role": "author", "emailVerified": True},
            "3": {"id": 3, "username": "seller", "email": "seller@example.com", "role": "seller", "emailVerified": False},
        }
        self.passwords = {"1": "admin-pass", "2": "author-pass", "3": "seller-pass"}
        self.blocked_until: dict[str, str] = {}
        self.temporary_passwords: set[str] = set()
        self.companies: dict[str, dict] = {
            "10": {
                "id": 10,
                "name": "Acme Bakery",
                "slug": "acme-bakery",
                "email": "hello@acme.test",
                "company_type_id": "1",
                "is_blocked": False,
                "is_premium": True,
                "is_verified": True,
                "average_rating": 4.5,
                "total_reviews": 12,
                "created_by": "3",
            },
            "11": {
                "id": 11,
                "name": "Bolt Hardware",
                "slug": "bolt-hardware",
                "company_type_id": "2",
                "is_blocked": False,
                "is_premium": False,
                "is_verified": False,
                "average_rating": 3.9,
                "total_reviews": 4,
                "created_by": "3",
            },
            "12": {
                "id": 12,
                "name": "Closed Cafe",
                "slug": "closed-cafe",
                "company_type_id": "1",
                "is_blocked": True,
                "is_premium": False,
                "is_verified": False,
                "created_by": "2",
            },
        }
        self.company_types = [{"id": 1, "name": "Food & Drink"}, {"id": 2, "name": "Retail"}]
        self.contacts: dict[str, dict] = {
            "100": {
                "id": 100,
                "full_name": "Jane Roe",
                "email": "jane@example.com",
                "subject": "Admission",
                "message": "When does enrolment open?",
                "inquiry_type": "admission",
                "status": "new",
                "created_at": "2026-01-02T10:00:00Z",
            },
            "101": {
                "id": 101,
                "full_name": "John Doe",
                "email": "john@example.com",
                "subject": "Late delivery",
                "message": "My order never arrived.",
                "inquiry_type": "complaint",
                "status": "resolved",
                "created_at": "2026-01-05T10:00:00Z",
            },
        }
        self.access_tokens: dict[str, str] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.calls: Counter = Counter()
        self.params: dict[str, dict] = {}
        self.content_types: list[str] = []
        self.refresh_delay = 0.05
        self.refresh_fails = False
        self.profile_always_401 = False
        self.list_gate: Optional[asyncio.Event] = None
        self._next_id = 1000

    # -- helpers used by tests ------------------------------------------

    def expire_access(self) -> None:
        """Invalidate every access token; refresh tokens stay valid."""
        self.access_tokens.clear()

    def block(self, user_id: str, until: datetime) -> None:
        self.blocked_until[user_id] = until.isoformat().replace("+00:00", "Z")

    def count(self, method: str, path: str) -> int:
        return self.calls[f"{method} /api{path}"]

    # -- helpers used by routes -----------------------------------------

    def new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def public(self, user: dict) -> dict:
        out = dict(user)
        if str(user["id"]) in self.temporary_passwords:
            out["isTemporaryPassword"] = True
        return out

    def issue(self, response: Response, user_id: str) -> None:
        access = secrets.token_hex(8)
        refresh = secrets.token_hex(8)
        self.access_tokens[access] = user_id
        self.refresh_tokens[refresh] = user_id
        response.set_cookie("access_token", access, httponly=True)
        response.set_cookie("refresh_token", refresh, httponly=True)

    def check_blocked(self, user_id: str) -> None:
        until = self.blocked_until.get(user_id)
        if until:
            raise Reject(403, "Your account is temporarily blocked", blocked_until=until, forceLogout=True)


def _page(records: list[dict], request: Request) -> dict:
    page = int(request.query_params.get("page", 1))
    limit = int(request.query_params.get("limit", 10))
    start = (page - 1) * limit
    return {
        "success": True,
        "message": "OK",
        "data": records[start : start + limit],
        "meta": {"total": len(records), "page": page, "limit": limit, "totalPages": max(1, -(-len(records) // limit))},
    }


def _ok(data: Any = None, message: str = "OK") -> dict:
    return {"success": True, "message": message, "data": data}


# ---------------------------------------------------------------------------
# Stub app
# ---------------------------------------------------------------------------


def build_app(backend: StubBackend) -> FastAPI:
    app = FastAPI()
    router = APIRouter(prefix="/api")

    @app.exception_handler(Reject)
    async def _reject(request: Request, exc: Reject) -> JSONResponse:
        return JSONResponse(status_code=exc.status, content={"success": False, "message": exc.message, **exc.extra})

    @app.middleware("http")
    async def _count(request: Request, call_next):
        backend.calls[f"{request.method} {request.url.path}"] += 1
        backend.params[request.url.path] = dict(request.query_params)
        return await call_next(request)

    def current_user(request: Request) -> dict:
        user_id = backend.access_tokens.get(request.cookies.get("access_token", ""))
        if user_id is None:
            raise Reject(401, "Unauthorized")
        backend.check_blocked(user_id)
        return backend.users[user_id]

    def admin_user(user: dict = Depends(current_user)) -> dict:
        if user["role"] != "admin":
            raise Reject(403, "Forbidden resource")
        return user

    # -- auth -----------------------------------------------------------

    @router.post("/auth/login")
    async def login(body: dict, response: Response):
        user = next(
            (
                u
                for u in backend.users.values()
                if (body.get("email") and u["email"] == body["email"])
                or (body.get("username") and u["username"] == body["username"])
            ),
            None,
        )
        if user is None or backend.passwords.get(str(user["id"])) != body.get("password"):
            raise Reject(401, "Invalid credentials")
        backend.check_blocked(str(user["id"]))
        backend.issue(response, str(user["id"]))
        body = _ok(backend.public(user), "Login successful")
        body["requiresPasswordReset"] = str(user["id"]) in backend.temporary_passwords
        return body

    @router.post("/auth/logout")
    async def logout(request: Request, response: Response):
        backend.access_tokens.pop(request.cookies.get("access_token", ""), None)
        backend.refresh_tokens.pop(request.cookies.get("refresh_token", ""), None)
        response.delete_cookie("access_token")
        response.delete_cookie("refresh_token")
        return _ok(message="Logged out")

    @router.post("/auth/refresh-token")
    async def refresh_token(request: Request, response: Response):
        await asyncio.sleep(backend.refresh_delay)
        user_id = backend.refresh_tokens.pop(request.cookies.get("refresh_token", ""), None)
        if backend.refresh_fails or user_id is None:
            raise Reject(401, "Invalid refresh token")
        backend.issue(response, user_id)
        return _ok(backend.public(backend.users[user_id]), "Token refreshed")

    @router.get("/auth/profile")
    async def profile(user: dict = Depends(current_user)):
        if backend.profile_always_401:
            raise Reject(401, "Token rejected")
        return _ok(backend.public(user))

    @router.post("/auth/register")
    async def register(body: dict):
        if any(u["email"] == body.get("email") for u in backend.users.values()):
            raise Reject(400, "Email already registered", errors=[{"field": "email", "message": "already taken"}])
        new_id = backend.new_id()
        user = {
            "id": new_id,
            "username": body.get("username", ""),
            "email": body.get("email", ""),
            "role": body.get("role", "seller"),
            "emailVerified": False,
        }
        backend.users[str(new_id)] = user
        backend.passwords[str(new_id)] = body.get("password", "")
        return _ok(user, "Registered")

    @router.get("/auth/verify/{token}")
    async def verify(token: str):
        if token != "good-token":
            raise Reject(400, "Invalid or expired verification token")
        return _ok(message="Email verified")

    @router.post("/auth/resend-verification")
    async def resend_verification(body: dict):
        return _ok(message=f"Verification email sent to {body.get('email')}")

    @router.post("/auth/forgot-password")
    async def forgot_password(body: dict):
        if not body.get("email"):
            raise Reject(400, "Email is required")
        return _ok(message="Reset email sent")

    @router.post("/auth/reset")
    async def set_password(body: dict, user: dict = Depends(current_user)):
        if len(body.get("newPassword") or "") < 8:
            raise Reject(400, "Password must be at least 8 characters")
        backend.passwords[str(user["id"])] = body["newPassword"]
        backend.temporary_passwords.discard(str(user["id"]))
        return _ok(backend.public(user), "Password updated")

    @router.post("/auth/reset-password/{token}")
    async def reset_password(token: str, body: dict):
        if token != "reset-token":
            raise Reject(400, "Invalid or expired reset token")
        backend.passwords["3"] = body.get("password", "")
        return _ok(message="Password updated")

    # -- companies (fixed paths before /{key}) --------------------------

    @router.get("/companies")
    async def list_companies(request: Request):
        if backend.list_gate is not None:
            await backend.list_gate.wait()
        visible = [c for c in backend.companies.values() if not c["is_blocked"]]
        return _page(visible, request)

    @router.get("/companies/my-companies")
    async def my_companies(request: Request, user: dict = Depends(current_user)):
        mine = [c for c in backend.companies.values() if c.get("created_by") == str(user["id"])]
        return _page(mine, request)

    @router.get("/companies/premium-companies")
    async def premium(request: Request):
        return _page([c for c in backend.companies.values() if c["is_premium"] and not c["is_blocked"]], request)

    @router.get("/companies/verified-companies")
    async def verified(request: Request):
        return _page([c for c in backend.companies.values() if c["is_verified"] and not c["is_blocked"]], request)

    @router.get("/companies/top-rated")
    async def top_rated(request: Request):
        ranked = sorted(
            (c for c in backend.companies.values() if not c["is_blocked"]),
            key=lambda c: c.get("average_rating") or 0,
            reverse=True,
        )
        return _page(ranked, request)

    @router.get("/companies/blocked-companies")
    async def blocked(request: Request, user: dict = Depends(admin_user)):
        return _page([c for c in backend.companies.values() if c["is_blocked"]], request)

    @router.get("/companies/search")
    async def search(request: Request):
        query = request.query_params.get("query", "").lower()
        return _page([c for c in backend.companies.values() if query in c["name"].lower()], request)

    @router.get("/companies/filter")
    async def filter_companies(request: Request):
        records = [c for c in backend.companies.values() if not c["is_blocked"]]
        for key in ("company_type_id", "is_premium", "is_verified"):
            wanted = request.query_params.get(key)
            if wanted is not None:
                records = [c for c in records if str(c.get(key)).lower() == wanted]
        return _page(records, request)

    @router.get("/companies/companyType")
    async def company_types():
        return _ok(backend.company_types)

    @router.get("/companies/slug/{slug}/check")
    async def check_slug(slug: str, excludeId: Optional[str] = None):
        taken = any(c["slug"] == slug and str(c["id"]) != excludeId for c in backend.companies.values())
        return {"success": True, "message": "Slug taken" if taken else "Slug available", "is_unique": not taken}

    @router.get("/companies/{key}")
    async def get_company(key: str):
        for company in backend.companies.values():
            if str(company["id"]) == key or company["slug"] == key:
                return _ok(company)
        raise Reject(404, "Company not found")

    @router.post("/companies")
    async def create_company(request: Request, user: dict = Depends(current_user)):
        content_type = request.headers.get("content-type", "")
        backend.content_types.append(content_type)
        if content_type.startswith("multipart/form-data"):
            form = await request.form()
            body = {k: v for k, v in form.items() if isinstance(v, str)}
            body["logo"] = next((v.filename for v in form.values() if not isinstance(v, str)), None)
        else:
            body = await request.json()
        if any(c["slug"] == body.get("slug") for c in backend.companies.values()):
            raise Reject(400, "Slug already exists", errors=[{"field": "slug", "message": "must be unique"}])
        new_id = backend.new_id()
        company = {
            "is_blocked": False,
            "is_premium": False,
            "is_verified": False,
            **body,
            "id": new_id,
            "created_by": str(user["id"]),
        }
        backend.companies[str(new_id)] = company
        return _ok(company, "Company created")

    @router.put("/companies/{company_id}")
    async def update_company(company_id: str, body: dict, user: dict = Depends(current_user)):
        company = backend.companies.get(company_id)
        if company is None:
            raise Reject(404, "Company not found")
        company.update(body)
        return _ok(company, "Company updated")

    @router.patch("/companies/{company_id}/premium")
    async def set_premium(company_id: str, body: dict, user: dict = Depends(admin_user)):
        company = backend.companies[company_id]
        company["is_premium"] = bool(body.get("is_premium"))
        return _ok(company)

    @router.patch("/companies/{company_id}/verification")
    async def set_verification(company_id: str, body: dict, user: dict = Depends(admin_user)):
        company = backend.companies[company_id]
        company["is_verified"] = bool(body.get("is_verified"))
        return _ok(company)

    @router.post("/companies/{company_id}/recalculate-stats")
    async def recalculate_stats(company_id: str, user: dict = Depends(admin_user)):
        company = backend.companies[company_id]
        company["average_rating"] = 4.0
        company["total_reviews"] = 15
        return _ok(company, "Stats recalculated")

    @router.patch("/companies/{company_id}/toggle-block")
    async def toggle_block(company_id: str, user: dict = Depends(admin_user)):
        company = backend.companies[company_id]
        company["is_blocked"] = not company["is_blocked"]
        return _ok(company)

    @router.delete("/companies/{company_id}")
    async def delete_company(company_id: str, user: dict = Depends(admin_user)):
        if backend.companies.pop(company_id, None) is None:
            raise Reject(404, "Company not found")
        return _ok(message="Company deleted")

    # -- users ----------------------------------------------------------

    @router.get("/users")
    async def list_users(request: Request, user: dict = Depends(admin_user)):
        return _page(list(backend.users.values()), request)

    @router.get("/users/admins")
    async def list_admins(request: Request, user: dict = Depends(admin_user)):
        return _page([u for u in backend.users.values() if u["role"] == "admin"], request)

    @router.get("/users/authors")
    async def list_authors(request: Request, user: dict = Depends(admin_user)):
        return _page([u for u in backend.users.values() if u["role"] == "author"], request)

    @router.get("/users/{user_id}")
    async def get_user(user_id: str, user: dict = Depends(current_user)):
        if user_id not in backend.users:
            raise Reject(404, "User not found")
        return _ok(backend.users[user_id])

    @router.put("/users/{user_id}")
    async def update_user(user_id: str, body: dict, user: dict = Depends(current_user)):
        target = backend.users[user_id]
        target.update({k: v for k, v in body.items() if k in ("username", "email")})
        return _ok(target, "User updated")

    @router.put("/users/{user_id}/role")
    async def update_role(user_id: str, body: dict, user: dict = Depends(admin_user)):
        target = backend.users[user_id]
        target["role"] = body["role"]
        return _ok(target, "Role updated")

    @router.delete("/users/{user_id}")
    async def delete_user(user_id: str, user: dict = Depends(admin_user)):
        backend.users.pop(user_id, None)
        return _ok(message="User deleted")

    # -- contacts -------------------------------------------------------

    @router.get("/contacts")
    async def list_contacts(request: Request, user: dict = Depends(admin_user)):
        return _page(list(backend.contacts.values()), request)

    @router.post("/contacts")
    async def create_contact(body: dict):
        new_id = backend.new_id()
        contact = {"status": "new", **body, "id": new_id, "created_at": "2026-02-01T09:00:00Z"}
        backend.contacts[str(new_id)] = contact
        return _ok(contact, "Inquiry received")

    @router.patch("/contacts/{contact_id}/status")
    async def update_status(contact_id: str, body: dict, user: dict = Depends(admin_user)):
        contact = backend.contacts[contact_id]
        contact.update(body)
        return _ok(contact, "Status updated")

    @router.delete("/contacts/{contact_id}")
    async def delete_contact(contact_id: str, user: dict = Depends(admin_user)):
        backend.contacts.pop(contact_id, None)
        return _ok(message="Inquiry deleted")

    app.include_router(router)
    return app


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock the session manager reads instead of the wall clock."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def backend() -> StubBackend:
    return StubBackend()


@pytest.fixture
def settings() -> Settings:
    return Settings(api_base_url="http://testserver", api_prefix="/api", state_db_url="", _env_file=None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def navigations() -> list[str]:
    return []


@pytest.fixture
def state_store() -> PersistedStateStore:
    return PersistedStateStore("")


@pytest.fixture
async def make_client(backend, settings, clock, navigations, state_store):
    """Factory for clients sharing one backend and one state store.

    Each client gets its own transport (and so its own cookie jar), like a
    second process started against the same persisted state.
    """
    created: list[DirectoryClient] = []

    def _make() -> DirectoryClient:
        directory = DirectoryClient(
            settings,
            http_transport=httpx.ASGITransport(app=build_app(backend)),
            state_store=state_store,
            navigate=navigations.append,
            clock=clock,
        )
        created.append(directory)
        return directory

    yield _make
    for directory in created:
        await directory.aclose()


@pytest.fixture
async def client(make_client):
    return make_client()


async def _signed_in(client: DirectoryClient, credentials: LoginCredentials) -> DirectoryClient:
    envelope = await client.session.login(credentials)
    assert envelope.success, envelope.message
    await client.synchronizer.wait_idle()
    return client


@pytest.fixture
async def admin_client(client):
    return await _signed_in(client, ADMIN)


@pytest.fixture
async def seller_client(client):
    return await _signed_in(client, SELLER)
