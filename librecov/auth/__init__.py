"""Authentication and authorization for librecov.

This package provides:

* **OpenID Connect login** with the authorization code flow and PKCE,
  for any standards-compliant provider (Keycloak, Authentik, Dex, ...).
* **Server-side sessions** held in memory and swept periodically.
* **Token authentication** for CI and scripts: personal user tokens,
  project-scoped tokens and the legacy per-user token.
* **FastAPI dependencies** (``require_user``, ``optional_user``,
  ``require_admin``) that attach a ``Principal`` to the request.

OIDC is disabled unless ``OIDC_ISSUER`` and ``OIDC_CLIENT_ID`` are set;
token authentication always works.
"""

from __future__ import annotations

from librecov.auth.config import AuthConfig, CookieConfig, OIDCConfig, load_auth_config
from librecov.auth.dependencies import (
    Principal,
    optional_user,
    require_account,
    require_admin,
    require_user,
)
from librecov.auth.oidc import OIDCClient
from librecov.auth.routes import router as auth_router
from librecov.auth.session import SessionStore
from librecov.auth.state import AuthState, get_auth_state, setup_auth

__all__ = [
    "AuthConfig",
    "AuthState",
    "CookieConfig",
    "OIDCClient",
    "OIDCConfig",
    "Principal",
    "SessionStore",
    "auth_router",
    "get_auth_state",
    "load_auth_config",
    "optional_user",
    "require_account",
    "require_admin",
    "require_user",
    "setup_auth",
]
