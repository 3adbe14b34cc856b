"""Declarative configuration manager for librecov.

Settings come from a TOML file (``LIBRECOV_CONF``) when one is present,
otherwise from environment variables.  Example file::

    [server]
    data_dir = "/var/lib/librecov"
    frontend_url = "https://coverage.example.com"
    first_admin_email = "ops@example.com"
    session_sweep_interval = 300

    [database]
    url = "postgresql+asyncpg://librecov:secret@db/librecov"

    [oidc]
    issuer = "https://sso.example.com/realms/main"
    client_id = "librecov"
    redirect_url = "https://coverage.example.com/auth/callback"
    scopes = ["openid", "profile", "email", "groups"]
    groups_claim = "groups"
    timeout = 10

    [cookies]
    domain = "coverage.example.com"
    secure = true
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from librecov.auth.config import (
    DEFAULT_SCOPES,
    AuthConfig,
    CookieConfig,
    OIDCConfig,
    normalize_scopes,
)

_TRUE = ("1", "true", "yes", "on")

# ------------------------------------------------------------------
# Data classes
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ServerConfig:
    data_dir: Path = Path("./data")
    frontend_url: str = ""
    first_admin_email: str = ""
    session_sweep_interval: int = 300


@dataclass(frozen=True)
class DatabaseConfig:
    """Either a full SQLAlchemy ``url`` or the discrete Postgres parts.

    With neither set the database is SQLite under ``server.data_dir``.
    """

    url: str | None = None
    host: str | None = None
    port: int = 5432
    user: str = "librecov"
    password: str = ""
    name: str = "librecov"


# ------------------------------------------------------------------
# ConfigManager
# ------------------------------------------------------------------


class ConfigManager:
    """Holds the parsed configuration.

    Typical usage::

        cfg = ConfigManager.load()
        db.configure(cfg.database_url())
        auth = setup_auth(cfg.to_auth_config())
    """

    def __init__(
        self,
        server: ServerConfig,
        database: DatabaseConfig,
        oidc: OIDCConfig,
        cookies: CookieConfig,
    ) -> None:
        self._server = server
        self._database = database
        self._oidc = oidc
        self._cookies = cookies

    # -------------------------------------------------------------- factories

    @classmethod
    def from_file(cls, path: Path) -> ConfigManager:
        """Load configuration from a TOML file."""
        with open(path, "rb") as f:
            raw = tomllib.load(f)
        return cls._from_dict(raw)

    @classmethod
    def from_str(cls, toml_str: str) -> ConfigManager:
        """Load configuration from a TOML string (handy for tests)."""
        return cls._from_dict(tomllib.loads(toml_str))

    @classmethod
    def _from_dict(cls, raw: dict[str, Any]) -> ConfigManager:
        s = _section(raw, "server")
        server = ServerConfig(
            data_dir=Path(s.get("data_dir", "./data")),
            frontend_url=str(s.get("frontend_url", "")).rstrip("/"),
            first_admin_email=str(s.get("first_admin_email", "")).strip(),
            session_sweep_interval=_positive_int(
                s.get("session_sweep_interval", 300), "server.session_sweep_interval"
            ),
        )

        d = _section(raw, "database")
        database = DatabaseConfig(
            url=d.get("url") or None,
            host=d.get("host") or None,
            port=int(d.get("port", 5432)),
            user=str(d.get("user", "librecov")),
            password=str(d.get("password", "")),
            name=str(d.get("name", "librecov")),
        )

        o = _section(raw, "oidc")
        oidc = OIDCConfig(
            issuer=str(o.get("issuer", "")).rstrip("/"),
            client_id=str(o.get("client_id", "")),
            redirect_url=str(o.get("redirect_url", "")),
            scopes=normalize_scopes(o.get("scopes", DEFAULT_SCOPES)),
            groups_claim=str(o.get("groups_claim", "groups")) or "groups",
            timeout=float(o.get("timeout", 10)),
        )

        c = _section(raw, "cookies")
        cookies = CookieConfig(
            domain=c.get("domain") or None,
            secure=bool(c.get("secure", False)),
        )

        return cls(server, database, oidc, cookies)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ConfigManager:
        """Build the configuration from environment variables.

        OIDC_ISSUER, OIDC_CLIENT_ID, OIDC_REDIRECT_URL   : identity provider
        OIDC_SCOPES        : space or comma separated (default openid profile email)
        OIDC_GROUPS_CLAIM  : claim holding group names (default ``groups``)
        OIDC_TIMEOUT       : seconds per provider request (default 10)
        COOKIE_DOMAIN, COOKIE_SECURE                     : session cookies
        FRONTEND_URL       : where to send the browser after login
        FIRST_ADMIN_EMAIL  : user promoted to admin at startup
        DATABASE_URL       : any SQLAlchemy async URL, or
        DB_HOST, DB_PORT, DB_USER, DB_PASSWORD, DB_NAME   : PostgreSQL parts
        LIBRECOV_DATA      : directory for the SQLite database (default ./data)
        SESSION_SWEEP_INTERVAL : seconds between session sweeps (default 300)
        """
        env = os.environ if environ is None else environ

        server = ServerConfig(
            data_dir=Path(env.get("LIBRECOV_DATA", "./data")),
            frontend_url=env.get("FRONTEND_URL", "").rstrip("/"),
            first_admin_email=env.get("FIRST_ADMIN_EMAIL", "").strip(),
            session_sweep_interval=_positive_int(
                env.get("SESSION_SWEEP_INTERVAL", "300"), "SESSION_SWEEP_INTERVAL"
            ),
        )
        database = DatabaseConfig(
            url=env.get("DATABASE_URL") or None,
            host=env.get("DB_HOST") or None,
            port=int(env.get("DB_PORT", "5432")),
            user=env.get("DB_USER", "librecov"),
            password=env.get("DB_PASSWORD", ""),
            name=env.get("DB_NAME", "librecov"),
        )
        oidc = OIDCConfig(
            issuer=env.get("OIDC_ISSUER", "").rstrip("/"),
            client_id=env.get("OIDC_CLIENT_ID", ""),
            redirect_url=env.get("OIDC_REDIRECT_URL", ""),
            scopes=normalize_scopes(env.get("OIDC_SCOPES") or DEFAULT_SCOPES),
            groups_claim=env.get("OIDC_GROUPS_CLAIM") or "groups",
            timeout=float(env.get("OIDC_TIMEOUT", "10")),
        )
        cookies = CookieConfig(
            domain=env.get("COOKIE_DOMAIN") or None,
            secure=env.get("COOKIE_SECURE", "false").lower() in _TRUE,
        )
        return cls(server, database, oidc, cookies)

    @classmethod
    def load(cls) -> ConfigManager:
        """File named by ``LIBRECOV_CONF`` if it exists, else the environment."""
        path = os.environ.get("LIBRECOV_CONF")
        if path and Path(path).is_file():
            return cls.from_file(Path(path))
        return cls.from_env()

    @classmethod
    def default(cls) -> ConfigManager:
        return cls(ServerConfig(), DatabaseConfig(), OIDCConfig(), CookieConfig())

    # -------------------------------------------------------------- accessors

    @property
    def server(self) -> ServerConfig:
        return self._server

    @property
    def database(self) -> DatabaseConfig:
        return self._database

    @property
    def oidc(self) -> OIDCConfig:
        return self._oidc

    @property
    def cookies(self) -> CookieConfig:
        return self._cookies

    @property
    def sqlite_path(self) -> Path:
        return self._server.data_dir / "librecov.sqlite3"

    def database_url(self) -> str:
        """SQLAlchemy async URL for the configured database."""
        d = self._database
        if d.url:
            return d.url
        if d.host:
            return (
                f"postgresql+asyncpg://{d.user}:{d.password}"
                f"@{d.host}:{d.port}/{d.name}"
            )
        return f"sqlite+aiosqlite:///{self.sqlite_path}"

    def uses_sqlite(self) -> bool:
        return self.database_url().startswith("sqlite")

    # -------------------------------------------- auth subsystem integration

    def to_auth_config(self) -> AuthConfig:
        return AuthConfig(
            oidc=self._oidc,
            cookies=self._cookies,
            frontend_url=self._server.frontend_url,
            first_admin_email=self._server.first_admin_email,
        )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ValueError(f"[{name}] must be a table")
    return value


def _positive_int(value: Any, label: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label} must be an integer, got {value!r}") from None
    if number <= 0:
        raise ValueError(f"{label} must be positive, got {number}")
    return number


def redact_url(url: str) -> str:
    """Hide the password part of a database URL for logging."""
    return re.sub(r"(://[^:/@]+:)[^@]*@", r"\1***@", url)
