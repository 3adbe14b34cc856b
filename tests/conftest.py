"""Shared fixtures for the librecov test suite."""

from __future__ import annotations

import base64
import time
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from librecov import db
from librecov.auth import AuthConfig, AuthState, OIDCConfig, setup_auth
from librecov.models import Project, ProjectToken, User, UserToken, generate_token

# ---------------------------------------------------------------------------
# Sample Coveralls payload
# ---------------------------------------------------------------------------

# a.py: 3 measurable, 2 covered; b.py: 3 measurable, 1 covered -> 50%
SAMPLE_SOURCE_FILES: list[dict[str, Any]] = [
    {"name": "a.py", "source": "x = 1\ny = 2\n\nz = 3\n", "coverage": [1, 0, None, 2]},
    {"name": "b.py", "source": "", "coverage": [None, 0, 0, 1]},
]


def coveralls_payload(repo_token: str, **overrides: Any) -> dict[str, Any]:
    """A Coveralls upload document as CI clients send it."""
    payload: dict[str, Any] = {
        "repo_token": repo_token,
        "service_name": "github-actions",
        "service_number": "42",
        "git": {
            "branch": "main",
            "head": {"id": "abc123", "message": "Fix the thing"},
        },
        "source_files": SAMPLE_SOURCE_FILES,
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Fake OpenID provider (served through httpx.MockTransport)
# ---------------------------------------------------------------------------

ISSUER = "https://sso.example.test"
CLIENT_ID = "librecov"
REDIRECT_URL = "http://test/auth/callback"
FRONTEND_URL = "http://frontend.test"
FIRST_ADMIN_EMAIL = "root@example.com"
SIGNING_SECRET = "test-signing-secret-0123456789abcdef"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class FakeProvider:
    """Minimal OIDC provider: discovery, JWKS, token and userinfo endpoints."""

    def __init__(self) -> None:
        self.jwks_kids: list[str] = ["key-1"]
        self.signing_kid = "key-1"
        self.jwks_fetches = 0
        self.discovery_fetches = 0
        self.token_requests: list[dict[str, str]] = []
        self.token_status = 200
        self.token_body: dict[str, Any] | None = None
        self.id_token_claims: dict[str, Any] = {}
        self.userinfo: dict[str, Any] = {"sub": "user-123", "groups": ["devs", "qa"]}
        self.discovery_issuer = ISSUER

    def id_token(self, **overrides: Any) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "user-123",
            "email": "alice@example.com",
            "email_verified": True,
            "name": "Alice",
            "groups": ["devs"],
            "iat": now,
            "exp": now + 300,
        }
        claims.update(self.id_token_claims)
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(
            claims,
            SIGNING_SECRET,
            algorithm="HS256",
            headers={"kid": self.signing_kid},
        )

    def discovery(self) -> dict[str, Any]:
        return {
            "issuer": self.discovery_issuer,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "jwks_uri": f"{ISSUER}/jwks",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
            "id_token_signing_alg_values_supported": ["HS256", "none"],
        }

    def jwks(self) -> dict[str, Any]:
        k = _b64url(SIGNING_SECRET.encode("utf-8"))
        return {
            "keys": [
                {"kty": "oct", "kid": kid, "alg": "HS256", "use": "sig", "k": k}
                for kid in self.jwks_kids
            ]
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            self.discovery_fetches += 1
            return httpx.Response(200, json=self.discovery())
        if path == "/jwks":
            self.jwks_fetches += 1
            return httpx.Response(200, json=self.jwks())
        if path == "/token":
            self.token_requests.append(dict(parse_qsl(request.content.decode())))
            body = self.token_body
            if body is None:
                body = {
                    "access_token": "provider-access-token",
                    "id_token": self.id_token(),
                    "token_type": "Bearer",
                    "expires_in": 300,
                }
            return httpx.Response(self.token_status, json=body)
        if path == "/userinfo":
            if request.headers.get("authorization") != "Bearer provider-access-token":
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def make_auth_config(**overrides: Any) -> AuthConfig:
    oidc = OIDCConfig(issuer=ISSUER, client_id=CLIENT_ID, redirect_url=REDIRECT_URL)
    values: dict[str, Any] = {
        "oidc": oidc,
        "frontend_url": FRONTEND_URL,
        "first_admin_email": FIRST_ADMIN_EMAIL,
    }
    values.update(overrides)
    return AuthConfig(**values)


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


async def create_user(
    email: str,
    *,
    admin: bool = False,
    groups: tuple[str, ...] = (),
    name: str = "",
) -> User:
    async with db.session() as sess:
        user = User(
            email=email,
            name=name or email.split("@")[0],
            admin=admin,
            groups=sorted(groups),
            token=generate_token(),
        )
        sess.add(user)
        await sess.flush()
    return user


async def create_project(owner: User, name: str = "demo") -> Project:
    async with db.session() as sess:
        project = Project(name=name, user_id=owner.id, current_branch="main")
        sess.add(project)
        await sess.flush()
    return project


async def create_user_token(user: User, name: str = "laptop") -> UserToken:
    async with db.session() as sess:
        token = UserToken(user_id=user.id, name=name)
        sess.add(token)
        await sess.flush()
    return token


async def create_project_token(project: Project, name: str = "ci") -> ProjectToken:
    async with db.session() as sess:
        token = ProjectToken(project_id=project.id, name=name)
        sess.add(token)
        await sess.flush()
    return token


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def session_cookie(auth: AuthState, user: User) -> dict[str, str]:
    """Headers carrying a fresh browser session for *user*."""
    session_id = auth.sessions.create_session(user.id, "provider-access-token")
    return {"Cookie": f"session_id={session_id}"}


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def initialized_db(tmp_path: Path):
    """Fresh SQLite database with every migration applied."""
    db_path = tmp_path / "librecov.sqlite3"
    db.configure(db.sqlite_url(db_path))
    await db.init_db()
    yield db_path
    await db.dispose()


# ---------------------------------------------------------------------------
# Auth state & HTTP client (uses the real FastAPI app, no lifespan)
# ---------------------------------------------------------------------------


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def auth_state(provider: FakeProvider) -> AuthState:
    import main as app_module

    return setup_auth(app_module.app, make_auth_config(), transport=provider.transport)


@pytest_asyncio.fixture()
async def client(initialized_db: Path, auth_state: AuthState):
    import main as app_module

    transport = ASGITransport(app=app_module.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
