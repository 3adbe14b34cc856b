"""Auth routes: OIDC login and callback, logout, session status, groups."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from librecov import db
from librecov.auth.config import SESSION_COOKIE, STATE_COOKIE, AuthConfig
from librecov.auth.dependencies import Principal, require_account, require_user
from librecov.auth.oidc import IdentityClaims, normalize_groups
from librecov.auth.session import SESSION_TTL, STATE_TTL
from librecov.auth.state import AuthState, get_auth_state
from librecov.errors import (
    Conflict,
    Expired,
    Forbidden,
    NotFound,
    OIDCDisabled,
    Unauthorized,
)
from librecov.models import User, generate_token, user_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _set_cookie(
    response: Response,
    config: AuthConfig,
    name: str,
    value: str,
    *,
    max_age: int,
    samesite: str,
) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        path="/",
        domain=config.cookies.domain,
        secure=config.cookies.secure,
        httponly=True,
        samesite=samesite,
    )


def _clear_cookie(response: Response, config: AuthConfig, name: str) -> None:
    response.delete_cookie(
        name,
        path="/",
        domain=config.cookies.domain,
        secure=config.cookies.secure,
        httponly=True,
    )


async def _user_by_email(sess: AsyncSession, email: str) -> User | None:
    stmt = select(User).where(func.lower(User.email) == email.lower())
    return (await sess.execute(stmt)).scalars().first()


async def _find_login_user(sess: AsyncSession, identity: IdentityClaims) -> User | None:
    stmt = select(User).where(User.oidc_subject == identity.subject)
    user = (await sess.execute(stmt)).scalars().first()
    if user is not None or not identity.email:
        return user
    existing = await _user_by_email(sess, identity.email)
    if existing is None:
        return None
    # Accounts created before their first OIDC login link on a verified email only.
    if existing.oidc_subject is None and identity.email_verified:
        return existing
    logger.warning(
        "Refusing login for subject %s: email %s belongs to user %d",
        identity.subject,
        identity.email,
        existing.id,
    )
    raise Conflict("Email already registered to another account")


async def upsert_login_user(identity: IdentityClaims, first_admin_email: str) -> User:
    """Find the user for *identity* or create one, refreshing claims."""
    async with db.session() as sess:
        user = await _find_login_user(sess, identity)
        if user is None:
            user = User(
                email=identity.email or f"{identity.subject}@oidc.invalid",
                name=identity.name,
                oidc_subject=identity.subject,
                email_verified=identity.email_verified,
                groups=sorted(identity.groups),
                token=generate_token(),
            )
            if (
                first_admin_email
                and identity.email
                and identity.email.strip().lower() == first_admin_email.strip().lower()
            ):
                user.admin = True
            sess.add(user)
            await sess.flush()
            logger.info("Created new user: %s (ID: %d)", user.email, user.id)
            return user

        if user.deleted_ts is not None:
            raise Forbidden("Account disabled")
        user.oidc_subject = identity.subject
        user.email_verified = identity.email_verified
        user.groups = sorted(identity.groups)
        if identity.name:
            user.name = identity.name
        logger.info("User logged in: %s (ID: %d)", user.email, user.id)
        return user


# ------------------------------------------------------------------
# Routes
# ------------------------------------------------------------------


@router.get("/config")
async def auth_config(auth: AuthState = Depends(get_auth_state)) -> dict[str, Any]:
    oidc = auth.config.oidc
    body: dict[str, Any] = {"oidc_enabled": oidc.enabled}
    if oidc.enabled:
        body["oidc"] = {
            "issuer": oidc.issuer,
            "client_id": oidc.client_id,
            "redirect_url": oidc.redirect_url,
        }
    return body


@router.get("/login")
async def auth_login(auth: AuthState = Depends(get_auth_state)) -> RedirectResponse:
    if not auth.oidc.enabled:
        raise OIDCDisabled()

    authz = await auth.oidc.build_authorization_request()
    auth.sessions.store_state(authz.state, authz.code_verifier)
    logger.debug("Redirecting to OIDC provider: %s", authz.url)

    response = RedirectResponse(url=authz.url, status_code=302)
    _set_cookie(
        response, auth.config, STATE_COOKIE, authz.state,
        max_age=STATE_TTL, samesite="lax",
    )
    return response


@router.get("/callback")
async def auth_callback(
    request: Request,
    code: str = "",
    state: str = "",
    error: str = "",
    auth: AuthState = Depends(get_auth_state),
) -> RedirectResponse:
    if not auth.oidc.enabled:
        raise OIDCDisabled()

    if error:
        logger.warning("OIDC provider returned error: %s", error)
        raise HTTPException(status_code=400, detail=f"Login failed: {error}")

    stored_state = request.cookies.get(STATE_COOKIE)
    if not stored_state:
        raise HTTPException(status_code=400, detail="State cookie not found")
    if state != stored_state:
        logger.warning("OIDC state mismatch")
        raise HTTPException(status_code=400, detail="Invalid state")

    try:
        pending = auth.sessions.get_state(state)
    except (NotFound, Expired):
        raise HTTPException(status_code=400, detail="Invalid or expired state") from None

    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")

    tokens = await auth.oidc.exchange_code(code, pending.code_verifier)
    claims = await auth.oidc.verify_id_token(
        tokens.id_token, access_token=tokens.access_token
    )
    identity = auth.oidc.extract_claims(claims)
    user = await upsert_login_user(identity, auth.config.first_admin_email)

    session_id = auth.sessions.create_session(user.id, tokens.access_token)
    logger.info("Session created for user %d", user.id)

    response = RedirectResponse(url=auth.config.frontend_url or "/", status_code=302)
    _clear_cookie(response, auth.config, STATE_COOKIE)
    _set_cookie(
        response, auth.config, SESSION_COOKIE, session_id,
        max_age=SESSION_TTL, samesite="strict",
    )
    return response


@router.post("/logout")
async def auth_logout(
    request: Request, auth: AuthState = Depends(get_auth_state)
) -> JSONResponse:
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        auth.sessions.delete_session(session_id)
    response = JSONResponse({"message": "Logged out successfully"})
    _clear_cookie(response, auth.config, SESSION_COOKIE)
    return response


@router.post("/refresh")
async def auth_refresh(
    request: Request, auth: AuthState = Depends(get_auth_state)
) -> dict[str, Any]:
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        raise Unauthorized("No session found")
    try:
        session = auth.sessions.get_session(session_id)
    except (NotFound, Expired):
        raise Unauthorized("Invalid or expired session") from None

    async with db.session() as sess:
        user = await db.active_user(sess, session.user_id)
    if user is None:
        auth.sessions.delete_session(session_id)
        raise Unauthorized("User not found")
    return {"user": user_to_dict(user), "session_valid": True}


@router.get("/me")
async def auth_me(principal: Principal = Depends(require_user)) -> dict[str, Any]:
    include_token = not principal.project_scoped
    return user_to_dict(principal.user, include_token=include_token)


@router.get("/groups")
async def auth_groups(principal: Principal = Depends(require_user)) -> dict[str, Any]:
    return {"groups": sorted(principal.groups)}


@router.post("/groups/refresh")
async def auth_groups_refresh(
    principal: Principal = Depends(require_account),
    auth: AuthState = Depends(get_auth_state),
) -> dict[str, Any]:
    """Re-read the caller's groups from the provider's userinfo endpoint."""
    if principal.session_id is None:
        raise HTTPException(
            status_code=400, detail="Group refresh requires a browser session"
        )
    session = auth.sessions.get_session(principal.session_id)
    info = await auth.oidc.fetch_userinfo(session.provider_token)
    groups = sorted(normalize_groups(info.get(auth.config.oidc.groups_claim)))

    async with db.session() as sess:
        user = await db.active_user(sess, principal.user.id)
        if user is None:
            raise Unauthorized("User not found")
        user.groups = groups
    logger.info("Refreshed groups for user %d: %s", principal.user.id, groups)
    return {"groups": groups}
