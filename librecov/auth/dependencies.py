"""FastAPI dependencies for authentication and authorization.

A request is authenticated by the first resolver in :data:`RESOLVERS`
that recognises it:

1. the ``session_id`` cookie of a browser login;
2. a personal user token;
3. a project token, which acts as the project's owner but only for
   that one project;
4. the legacy per-user static token.

Tokens are read from ``Authorization`` (``Bearer <t>``, or the raw
header value), then the ``token`` query parameter, then a ``token``
form field.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from librecov import db
from librecov.auth.config import SESSION_COOKIE
from librecov.errors import Expired, Forbidden, NotFound, Unauthorized
from librecov.models import User

logger = logging.getLogger(__name__)

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


@dataclass(frozen=True)
class Principal:
    """Who is calling, and how they proved it."""

    user: User
    method: str  # "session" | "user_token" | "project_token" | "legacy_token"
    project_id: str | None = None
    groups: frozenset[str] = field(default_factory=frozenset)
    session_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return bool(self.user.admin)

    @property
    def project_scoped(self) -> bool:
        return self.project_id is not None

    def check_project(self, project_id: str) -> None:
        """Project tokens only reach their own project."""
        if self.project_id is not None and self.project_id != project_id:
            raise Forbidden("Token is scoped to another project")


# ------------------------------------------------------------------
# Token extraction
# ------------------------------------------------------------------


async def extract_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "").strip()
    if header:
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
        return header

    token = request.query_params.get("token")
    if token:
        return token

    content_type = request.headers.get("content-type", "")
    if content_type.startswith(_FORM_TYPES):
        form = await request.form()
        value = form.get("token")
        if isinstance(value, str) and value:
            return value
    return None


# ------------------------------------------------------------------
# Resolvers
# ------------------------------------------------------------------


class Resolver(Protocol):
    async def resolve(
        self, request: Request, sess: AsyncSession, token: str | None
    ) -> Principal | None: ...


class SessionCookieResolver:
    async def resolve(
        self, request: Request, sess: AsyncSession, token: str | None
    ) -> Principal | None:
        session_id = request.cookies.get(SESSION_COOKIE)
        auth = getattr(request.app.state, "auth", None)
        if not session_id or auth is None:
            return None
        try:
            session = auth.sessions.get_session(session_id)
        except Expired:
            auth.sessions.delete_session(session_id)
            return None
        except NotFound:
            return None
        user = await db.active_user(sess, session.user_id)
        if user is None:
            return None
        return Principal(
            user=user, method="session", groups=user.group_set, session_id=session_id
        )


class UserTokenResolver:
    async def resolve(
        self, request: Request, sess: AsyncSession, token: str | None
    ) -> Principal | None:
        if not token:
            return None
        user_token = await db.user_token_by_value(sess, token)
        if user_token is None:
            return None
        user = await db.active_user(sess, user_token.user_id)
        if user is None:
            return None
        await db.stamp_last_used(sess, user_token)
        return Principal(user=user, method="user_token", groups=user.group_set)


class ProjectTokenResolver:
    async def resolve(
        self, request: Request, sess: AsyncSession, token: str | None
    ) -> Principal | None:
        if not token:
            return None
        project_token = await db.project_token_by_value(sess, token)
        if project_token is None:
            return None
        project = await db.project_by_id(sess, project_token.project_id)
        if project is None:
            return None
        owner = await db.active_user(sess, project.user_id)
        if owner is None:
            return None
        await db.stamp_last_used(sess, project_token)
        return Principal(
            user=owner,
            method="project_token",
            project_id=project.id,
            groups=owner.group_set,
        )


class LegacyTokenResolver:
    async def resolve(
        self, request: Request, sess: AsyncSession, token: str | None
    ) -> Principal | None:
        if not token:
            return None
        user = await db.user_by_legacy_token(sess, token)
        if user is None:
            return None
        return Principal(user=user, method="legacy_token", groups=user.group_set)


RESOLVERS: tuple[Resolver, ...] = (
    SessionCookieResolver(),
    UserTokenResolver(),
    ProjectTokenResolver(),
    LegacyTokenResolver(),
)


async def resolve_principal(request: Request) -> Principal | None:
    """Run the resolver chain once per request; the result is memoised on
    ``request.state.principal``."""
    if hasattr(request.state, "principal"):
        return request.state.principal

    token = await extract_token(request)
    principal: Principal | None = None
    async with db.session() as sess:
        for resolver in RESOLVERS:
            principal = await resolver.resolve(request, sess, token)
            if principal is not None:
                break

    if principal is None and token:
        logger.debug("Unrecognised credentials on %s", request.url.path)
    request.state.principal = principal
    return principal


# ------------------------------------------------------------------
# The dependencies
# ------------------------------------------------------------------


async def optional_user(request: Request) -> Principal | None:
    return await resolve_principal(request)


async def require_user(request: Request) -> Principal:
    principal = await resolve_principal(request)
    if principal is None:
        raise Unauthorized()
    return principal


async def require_account(principal: Principal = Depends(require_user)) -> Principal:
    """Like :func:`require_user`, but refuses project-scoped tokens."""
    if principal.project_scoped:
        raise Forbidden("Project tokens cannot manage accounts")
    return principal


async def require_admin(principal: Principal = Depends(require_account)) -> Principal:
    if not principal.is_admin:
        raise Forbidden()
    return principal
