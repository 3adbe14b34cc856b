"""Authentication configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

DEFAULT_SCOPES: tuple[str, ...] = ("openid", "profile", "email")

SESSION_COOKIE = "session_id"
STATE_COOKIE = "oidc_state"


def normalize_scopes(scopes: str | Iterable[str]) -> tuple[str, ...]:
    """Split, de-duplicate and make sure ``openid`` comes first."""
    if isinstance(scopes, str):
        items = scopes.replace(",", " ").split()
    else:
        items = [str(s).strip() for s in scopes]
    ordered: list[str] = ["openid"]
    for item in items:
        if item and item not in ordered:
            ordered.append(item)
    return tuple(ordered)


@dataclass(frozen=True)
class OIDCConfig:
    """Identity provider settings.  Login is enabled only with both
    ``issuer`` and ``client_id``."""

    issuer: str = ""
    client_id: str = ""
    redirect_url: str = ""
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    groups_claim: str = "groups"
    timeout: float = 10.0  # seconds

    @property
    def enabled(self) -> bool:
        return bool(self.issuer and self.client_id)


@dataclass(frozen=True)
class CookieConfig:
    domain: str | None = None
    secure: bool = False


@dataclass(frozen=True)
class AuthConfig:
    """Aggregated auth configuration."""

    oidc: OIDCConfig = field(default_factory=OIDCConfig)
    cookies: CookieConfig = field(default_factory=CookieConfig)
    frontend_url: str = ""  # post-login redirect; "/" when empty
    first_admin_email: str = ""


def load_auth_config() -> AuthConfig:
    """Build an ``AuthConfig`` the same way the application does at startup."""
    from librecov.config import ConfigManager

    return ConfigManager.load().to_auth_config()
