"""Tests for the librecov.auth package.

Covers: configuration, credential extraction, the resolver chain, the
FastAPI dependencies, and the OIDC login/callback/logout routes.
"""

from __future__ import annotations

import re
from unittest.mock import patch

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from starlette.requests import Request

from librecov import db
from librecov.auth import AuthState
from librecov.auth.config import (
    DEFAULT_SCOPES,
    AuthConfig,
    OIDCConfig,
    load_auth_config,
    normalize_scopes,
)
from librecov.auth.dependencies import extract_token
from librecov.models import User, UserToken
from tests.conftest import (
    FIRST_ADMIN_EMAIL,
    FRONTEND_URL,
    FakeProvider,
    bearer,
    create_project,
    create_project_token,
    create_user,
    create_user_token,
    session_cookie,
)

# =====================================================================
# Config
# =====================================================================


class TestNormalizeScopes:
    def test_openid_always_first(self):
        assert normalize_scopes("email profile") == ("openid", "email", "profile")

    def test_duplicates_removed(self):
        assert normalize_scopes(["openid", "email", "email"]) == ("openid", "email")

    def test_comma_separated(self):
        assert normalize_scopes("profile,groups") == ("openid", "profile", "groups")


class TestOIDCConfig:
    def test_disabled_by_default(self):
        assert OIDCConfig().enabled is False

    def test_needs_issuer_and_client(self):
        assert OIDCConfig(issuer="https://sso").enabled is False
        assert OIDCConfig(issuer="https://sso", client_id="c").enabled is True

    def test_default_scopes(self):
        assert OIDCConfig().scopes == DEFAULT_SCOPES


class TestLoadAuthConfig:
    def test_empty_env(self):
        with patch.dict("os.environ", {}, clear=True):
            cfg = load_auth_config()
        assert cfg.oidc.enabled is False
        assert cfg.cookies.secure is False
        assert cfg.frontend_url == ""

    def test_full_env(self):
        env = {
            "OIDC_ISSUER": "https://sso.example.com/",
            "OIDC_CLIENT_ID": "librecov",
            "OIDC_REDIRECT_URL": "https://cov.example.com/auth/callback",
            "OIDC_SCOPES": "profile email groups",
            "COOKIE_DOMAIN": "cov.example.com",
            "COOKIE_SECURE": "true",
            "FRONTEND_URL": "https://cov.example.com",
            "FIRST_ADMIN_EMAIL": "ops@example.com",
        }
        with patch.dict("os.environ", env, clear=True):
            cfg = load_auth_config()
        assert cfg.oidc.enabled is True
        assert cfg.oidc.issuer == "https://sso.example.com"
        assert cfg.oidc.scopes == ("openid", "profile", "email", "groups")
        assert cfg.cookies.domain == "cov.example.com"
        assert cfg.cookies.secure is True
        assert cfg.first_admin_email == "ops@example.com"


# =====================================================================
# Credential extraction
# =====================================================================


def _request(
    headers: dict[str, str] | None = None,
    query: str = "",
    body: bytes = b"",
) -> Request:
    raw_headers = [
        (k.lower().encode("latin-1"), v.encode("latin-1"))
        for k, v in (headers or {}).items()
    ]
    sent = False

    async def receive():
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "query_string": query.encode("latin-1"),
        "headers": raw_headers,
    }
    return Request(scope, receive)


class TestExtractToken:
    async def test_bearer(self):
        assert await extract_token(_request({"Authorization": "Bearer abc"})) == "abc"

    async def test_bearer_case_insensitive(self):
        assert await extract_token(_request({"Authorization": "bearer abc"})) == "abc"

    async def test_raw_header(self):
        assert await extract_token(_request({"Authorization": "abc"})) == "abc"

    async def test_query_parameter(self):
        assert await extract_token(_request(query="token=q1")) == "q1"

    async def test_header_beats_query(self):
        req = _request({"Authorization": "Bearer h1"}, query="token=q1")
        assert await extract_token(req) == "h1"

    async def test_form_field(self):
        req = _request(
            {"Content-Type": "application/x-www-form-urlencoded"}, body=b"token=f1"
        )
        assert await extract_token(req) == "f1"

    async def test_json_body_not_inspected(self):
        req = _request({"Content-Type": "application/json"}, body=b'{"token": "x"}')
        assert await extract_token(req) is None

    async def test_nothing(self):
        assert await extract_token(_request()) is None


# =====================================================================
# Resolver chain (exercised through /auth/me)
# =====================================================================


class TestResolverChain:
    async def test_no_credentials(self, client: AsyncClient):
        resp = await client.get("/auth/me")
        assert resp.status_code == 401
        assert resp.json()["code"] == "unauthorized"

    async def test_unknown_token(self, client: AsyncClient):
        resp = await client.get("/auth/me", headers=bearer("nope"))
        assert resp.status_code == 401

    async def test_session_cookie(self, client: AsyncClient, auth_state: AuthState):
        user = await create_user("alice@example.com", groups=("devs",))
        resp = await client.get("/auth/me", headers=session_cookie(auth_state, user))
        assert resp.status_code == 200
        assert resp.json()["email"] == "alice@example.com"
        assert resp.json()["token"] == user.token

    async def test_expired_session_is_dropped(
        self, client: AsyncClient, auth_state: AuthState
    ):
        user = await create_user("alice@example.com")
        headers = session_cookie(auth_state, user)
        session_id = headers["Cookie"].split("=", 1)[1]
        auth_state.sessions._clock = lambda: 10**12

        resp = await client.get("/auth/me", headers=headers)

        assert resp.status_code == 401
        assert session_id not in auth_state.sessions._sessions

    async def test_user_token_stamps_last_used(self, client: AsyncClient):
        user = await create_user("alice@example.com")
        token = await create_user_token(user)

        resp = await client.get("/auth/me", headers=bearer(token.token))

        assert resp.status_code == 200
        assert resp.json()["id"] == user.id
        async with db.session() as sess:
            stored = await sess.get(UserToken, token.id)
        assert stored.last_used_ts is not None

    async def test_legacy_token(self, client: AsyncClient):
        user = await create_user("alice@example.com")
        resp = await client.get("/auth/me", params={"token": user.token})
        assert resp.status_code == 200
        assert resp.json()["email"] == "alice@example.com"

    async def test_project_token_acts_as_owner_without_secret(self, client: AsyncClient):
        owner = await create_user("owner@example.com")
        project = await create_project(owner)
        scoped = await create_project_token(project)

        resp = await client.get("/auth/me", headers=bearer(scoped.token))

        assert resp.status_code == 200
        assert resp.json()["id"] == owner.id
        assert "token" not in resp.json()

    async def test_session_wins_over_token(
        self, client: AsyncClient, auth_state: AuthState
    ):
        alice = await create_user("alice@example.com")
        bob = await create_user("bob@example.com")
        headers = session_cookie(auth_state, alice)
        headers.update(bearer(bob.token))

        resp = await client.get("/auth/me", headers=headers)
        assert resp.json()["id"] == alice.id

    async def test_deleted_user_rejected(self, client: AsyncClient):
        user = await create_user("gone@example.com")
        token = await create_user_token(user)
        async with db.session() as sess:
            await db.soft_delete_user(sess, user.id)

        resp = await client.get("/auth/me", headers=bearer(token.token))
        assert resp.status_code == 401


class TestDependencies:
    async def test_project_token_cannot_manage_account(self, client: AsyncClient):
        owner = await create_user("owner@example.com")
        project = await create_project(owner)
        scoped = await create_project_token(project)

        resp = await client.get("/api/v1/user/tokens", headers=bearer(scoped.token))
        assert resp.status_code == 403

    async def test_admin_gate(self, client: AsyncClient):
        user = await create_user("alice@example.com")
        admin = await create_user("root@example.com", admin=True)

        denied = await client.get("/api/v1/admin/users", headers=bearer(user.token))
        allowed = await client.get("/api/v1/admin/users", headers=bearer(admin.token))

        assert denied.status_code == 403
        assert denied.json()["error"] == "Admin privileges required"
        assert allowed.status_code == 200

    async def test_admin_project_token_refused(self, client: AsyncClient):
        admin = await create_user("root@example.com", admin=True)
        project = await create_project(admin)
        scoped = await create_project_token(project)

        resp = await client.get("/api/v1/admin/users", headers=bearer(scoped.token))
        assert resp.status_code == 403


# =====================================================================
# Routes
# =====================================================================


def _state_from(location: str) -> str:
    match = re.search(r"[?&]state=([^&]+)", location)
    assert match is not None
    return match.group(1)


async def _login(client: AsyncClient) -> str:
    resp = await client.get("/auth/login", follow_redirects=False)
    assert resp.status_code == 302
    return _state_from(resp.headers["location"])


def _state_cookie(state: str) -> dict[str, str]:
    return {"Cookie": f"oidc_state={state}"}


class TestAuthConfigRoute:
    async def test_enabled(self, client: AsyncClient):
        resp = await client.get("/auth/config")
        body = resp.json()
        assert body["oidc_enabled"] is True
        assert body["oidc"]["client_id"] == "librecov"

    async def test_disabled(self, client: AsyncClient):
        import main as app_module

        app_module.app.state.auth = AuthState(AuthConfig())
        resp = await client.get("/auth/config")
        assert resp.json() == {"oidc_enabled": False}


class TestLoginRoute:
    async def test_redirects_with_state_cookie(
        self, client: AsyncClient, auth_state: AuthState
    ):
        resp = await client.get("/auth/login", follow_redirects=False)

        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith("https://sso.example.test/authorize?")
        assert "code_challenge_method=S256" in location
        state = _state_from(location)
        set_cookie = resp.headers["set-cookie"]
        assert f"oidc_state={state}" in set_cookie
        assert "HttpOnly" in set_cookie
        assert "samesite=lax" in set_cookie.lower()
        assert auth_state.sessions.get_state(state).code_verifier

    async def test_disabled_answers_501(self, client: AsyncClient):
        import main as app_module

        app_module.app.state.auth = AuthState(AuthConfig())
        resp = await client.get("/auth/login", follow_redirects=False)
        assert resp.status_code == 501
        assert resp.json()["code"] == "oidc_disabled"


class TestCallbackRoute:
    async def test_full_login_flow(
        self, client: AsyncClient, auth_state: AuthState, provider: FakeProvider
    ):
        state = await _login(client)

        resp = await client.get(
            "/auth/callback",
            params={"code": "good-code", "state": state},
            headers=_state_cookie(state),
            follow_redirects=False,
        )

        assert resp.status_code == 302
        assert resp.headers["location"] == FRONTEND_URL
        cookies = resp.headers.get_list("set-cookie")
        session_header = next(c for c in cookies if c.startswith("session_id="))
        assert "samesite=strict" in session_header.lower()
        assert any(c.startswith("oidc_state=") for c in cookies)

        session_id = session_header.split(";", 1)[0].split("=", 1)[1]
        session = auth_state.sessions.get_session(session_id)
        assert session.provider_token == "provider-access-token"
        assert provider.token_requests[0]["code"] == "good-code"

        async with db.session() as sess:
            user = await sess.get(User, session.user_id)
        assert user.email == "alice@example.com"
        assert user.oidc_subject == "user-123"
        assert user.email_verified is True
        assert user.groups == ["devs"]
        assert user.token
        assert user.admin is False

        me = await client.get("/auth/me", headers={"Cookie": f"session_id={session_id}"})
        assert me.json()["id"] == user.id

    async def test_state_is_single_use(self, client: AsyncClient):
        state = await _login(client)
        params = {"code": "c", "state": state}

        first = await client.get(
            "/auth/callback", params=params, headers=_state_cookie(state),
            follow_redirects=False,
        )
        second = await client.get(
            "/auth/callback", params=params, headers=_state_cookie(state),
            follow_redirects=False,
        )
        assert first.status_code == 302
        assert second.status_code == 400
        assert second.json()["detail"] == "Invalid or expired state"

    async def test_missing_state_cookie(self, client: AsyncClient):
        state = await _login(client)
        resp = await client.get(
            "/auth/callback",
            params={"code": "c", "state": state},
            headers={"Cookie": "unrelated=1"},
            follow_redirects=False,
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "State cookie not found"

    async def test_state_mismatch(self, client: AsyncClient):
        state = await _login(client)
        resp = await client.get(
            "/auth/callback",
            params={"code": "c", "state": "forged"},
            headers=_state_cookie(state),
            follow_redirects=False,
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid state"

    async def test_provider_error(self, client: AsyncClient):
        resp = await client.get(
            "/auth/callback", params={"error": "access_denied"}, follow_redirects=False
        )
        assert resp.status_code == 400
        assert "access_denied" in resp.json()["detail"]

    async def test_missing_code(self, client: AsyncClient):
        state = await _login(client)
        resp = await client.get(
            "/auth/callback",
            params={"state": state},
            headers=_state_cookie(state),
            follow_redirects=False,
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Missing authorization code"

    async def test_exchange_failure(self, client: AsyncClient, provider: FakeProvider):
        provider.token_status = 400
        provider.token_body = {"error": "invalid_grant"}
        state = await _login(client)
        resp = await client.get(
            "/auth/callback",
            params={"code": "c", "state": state},
            headers=_state_cookie(state),
            follow_redirects=False,
        )
        assert resp.status_code == 502
        assert resp.json()["code"] == "authentication_unavailable"

    async def test_bad_id_token(self, client: AsyncClient, provider: FakeProvider):
        provider.id_token_claims = {"aud": "another-client"}
        state = await _login(client)
        resp = await client.get(
            "/auth/callback",
            params={"code": "c", "state": state},
            headers=_state_cookie(state),
            follow_redirects=False,
        )
        assert resp.status_code == 401
        assert resp.json()["code"] == "invalid_id_token"

    async def test_first_admin_email(self, client: AsyncClient, provider: FakeProvider):
        provider.id_token_claims = {"sub": "root-sub", "email": FIRST_ADMIN_EMAIL.upper()}
        state = await _login(client)
        await client.get(
            "/auth/callback",
            params={"code": "c", "state": state},
            headers=_state_cookie(state),
            follow_redirects=False,
        )
        async with db.session() as sess:
            user = (
                await sess.execute(select(User).where(User.oidc_subject == "root-sub"))
            ).scalars().one()
        assert user.admin is True

    async def test_existing_user_linked_by_email(
        self, client: AsyncClient, provider: FakeProvider
    ):
        existing = await create_user("alice@example.com", groups=("old",))
        state = await _login(client)
        await client.get(
            "/auth/callback",
            params={"code": "c", "state": state},
            headers=_state_cookie(state),
            follow_redirects=False,
        )
        async with db.session() as sess:
            users = (await sess.execute(select(User))).scalars().all()
        assert len(users) == 1
        assert users[0].id == existing.id
        assert users[0].oidc_subject == "user-123"
        assert users[0].groups == ["devs"]

    async def test_unverified_email_never_links_existing_account(
        self, client: AsyncClient, provider: FakeProvider
    ):
        admin = await create_user(FIRST_ADMIN_EMAIL, admin=True)
        provider.id_token_claims = {
            "sub": "attacker-sub",
            "email": FIRST_ADMIN_EMAIL,
            "email_verified": False,
        }
        state = await _login(client)
        resp = await client.get(
            "/auth/callback",
            params={"code": "c", "state": state},
            headers=_state_cookie(state),
            follow_redirects=False,
        )

        assert resp.status_code == 409
        assert resp.json()["code"] == "conflict"
        assert not any(
            c.startswith("session_id=") for c in resp.headers.get_list("set-cookie")
        )
        async with db.session() as sess:
            users = (await sess.execute(select(User))).scalars().all()
        assert [u.id for u in users] == [admin.id]
        assert users[0].oidc_subject is None
        assert users[0].admin is True

    async def test_verified_email_of_linked_account_refused(
        self, client: AsyncClient, provider: FakeProvider
    ):
        existing = await create_user("alice@example.com")
        async with db.session() as sess:
            (await sess.get(User, existing.id)).oidc_subject = "original-sub"
        provider.id_token_claims = {"sub": "other-sub"}
        state = await _login(client)
        resp = await client.get(
            "/auth/callback",
            params={"code": "c", "state": state},
            headers=_state_cookie(state),
            follow_redirects=False,
        )

        assert resp.status_code == 409
        async with db.session() as sess:
            user = await sess.get(User, existing.id)
        assert user.oidc_subject == "original-sub"

    async def test_disabled_account(self, client: AsyncClient, provider: FakeProvider):
        user = await create_user("alice@example.com")
        async with db.session() as sess:
            await db.soft_delete_user(sess, user.id)
        state = await _login(client)
        resp = await client.get(
            "/auth/callback",
            params={"code": "c", "state": state},
            headers=_state_cookie(state),
            follow_redirects=False,
        )
        assert resp.status_code == 403
        assert resp.json()["error"] == "Account disabled"


class TestLogoutRoute:
    async def test_logout_destroys_session(
        self, client: AsyncClient, auth_state: AuthState
    ):
        user = await create_user("alice@example.com")
        headers = session_cookie(auth_state, user)

        resp = await client.post("/auth/logout", headers=headers)

        assert resp.status_code == 200
        assert resp.json() == {"message": "Logged out successfully"}
        assert "session_id=" in resp.headers["set-cookie"]
        assert len(auth_state.sessions) == 0
        assert (await client.get("/auth/me", headers=headers)).status_code == 401

    async def test_logout_without_session(self, client: AsyncClient):
        resp = await client.post("/auth/logout")
        assert resp.status_code == 200


class TestRefreshRoute:
    async def test_valid_session(self, client: AsyncClient, auth_state: AuthState):
        user = await create_user("alice@example.com")
        resp = await client.post("/auth/refresh", headers=session_cookie(auth_state, user))
        assert resp.status_code == 200
        assert resp.json()["session_valid"] is True
        assert resp.json()["user"]["id"] == user.id

    async def test_no_cookie(self, client: AsyncClient):
        resp = await client.post("/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["error"] == "No session found"

    async def test_unknown_session(self, client: AsyncClient):
        resp = await client.post("/auth/refresh", headers={"Cookie": "session_id=zzz"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid or expired session"


class TestGroupsRoutes:
    async def test_groups_of_caller(self, client: AsyncClient):
        user = await create_user("alice@example.com", groups=("qa", "devs"))
        resp = await client.get("/auth/groups", headers=bearer(user.token))
        assert resp.json() == {"groups": ["devs", "qa"]}

    async def test_refresh_from_userinfo(
        self, client: AsyncClient, auth_state: AuthState
    ):
        user = await create_user("alice@example.com", groups=("old",))
        resp = await client.post(
            "/auth/groups/refresh", headers=session_cookie(auth_state, user)
        )
        assert resp.status_code == 200
        assert resp.json() == {"groups": ["devs", "qa"]}
        async with db.session() as sess:
            stored = await sess.get(User, user.id)
        assert stored.groups == ["devs", "qa"]

    async def test_refresh_needs_browser_session(self, client: AsyncClient):
        user = await create_user("alice@example.com")
        resp = await client.post("/auth/groups/refresh", headers=bearer(user.token))
        assert resp.status_code == 400


@pytest.mark.parametrize("path", ["/auth/me", "/auth/groups"])
async def test_protected_routes_need_credentials(client: AsyncClient, path: str):
    resp = await client.get(path)
    assert resp.status_code == 401
