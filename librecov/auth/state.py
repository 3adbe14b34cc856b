"""Runtime auth state owned by the application."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

import httpx
from fastapi import FastAPI, Request

from librecov.auth.config import AuthConfig
from librecov.auth.oidc import OIDCClient
from librecov.auth.session import SWEEP_INTERVAL, SessionStore

logger = logging.getLogger(__name__)


class AuthState:
    """Session store, OIDC client and settings for one application.

    Created by :func:`setup_auth` during the FastAPI lifespan and kept on
    ``app.state.auth``.
    """

    def __init__(
        self,
        config: AuthConfig,
        *,
        sessions: SessionStore | None = None,
        oidc: OIDCClient | None = None,
    ) -> None:
        self.config = config
        self.sessions = sessions or SessionStore()
        self.oidc = oidc or OIDCClient(config.oidc)
        self._sweeper: asyncio.Task[None] | None = None

    def start(self, sweep_interval: float = SWEEP_INTERVAL) -> None:
        if self._sweeper is None:
            self._sweeper = self.sessions.start_sweeper(sweep_interval)

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None


def setup_auth(
    app: FastAPI,
    config: AuthConfig,
    *,
    sessions: SessionStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AuthState:
    """Build the auth state for *app*.  Safe when OIDC is not configured:
    token and session auth still work and the login routes answer 501."""
    state = AuthState(
        config,
        sessions=sessions,
        oidc=OIDCClient(config.oidc, transport=transport),
    )
    app.state.auth = state
    if config.oidc.enabled:
        logger.info("OIDC login enabled (issuer %s)", config.oidc.issuer)
    else:
        logger.info("OIDC not configured; token authentication only")
    return state


def get_auth_state(request: Request) -> AuthState:
    return request.app.state.auth
