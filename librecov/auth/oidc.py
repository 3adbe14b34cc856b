"""OpenID Connect relying party: authorization code flow with PKCE.

The client is public (no secret); the PKCE verifier proves that the
party redeeming the code is the one that started the login.  Provider
metadata comes from ``{issuer}/.well-known/openid-configuration`` and
is fetched lazily on first use, then cached together with the JWKS.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt

from librecov.auth.config import OIDCConfig
from librecov.errors import ExchangeFailed, InvalidIDToken, OIDCDisabled

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Data models
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProviderMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    userinfo_endpoint: str | None = None
    signing_algs: tuple[str, ...] = ("RS256",)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderMetadata":
        missing = [
            k
            for k in ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")
            if not isinstance(data.get(k), str) or not data.get(k)
        ]
        if missing:
            raise ValueError(f"discovery document lacks {', '.join(missing)}")
        algs = data.get("id_token_signing_alg_values_supported") or ["RS256"]
        return cls(
            issuer=data["issuer"],
            authorization_endpoint=data["authorization_endpoint"],
            token_endpoint=data["token_endpoint"],
            jwks_uri=data["jwks_uri"],
            userinfo_endpoint=data.get("userinfo_endpoint") or None,
            # An unsigned ID token is never acceptable.
            signing_algs=tuple(a for a in algs if isinstance(a, str) and a != "none"),
        )


@dataclass(frozen=True, slots=True)
class PKCEPair:
    verifier: str
    challenge: str
    method: str = "S256"


@dataclass(frozen=True, slots=True)
class AuthorizationRequest:
    url: str
    state: str
    code_verifier: str


@dataclass(frozen=True, slots=True)
class TokenResponse:
    """Tokens returned by the provider's token endpoint."""

    access_token: str
    id_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None


@dataclass(frozen=True, slots=True)
class IdentityClaims:
    subject: str
    email: str
    email_verified: bool
    name: str
    groups: frozenset[str]


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_pkce() -> PKCEPair:
    """Fresh verifier (32 random bytes) and its S256 challenge."""
    verifier = _b64url(secrets.token_bytes(32))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return PKCEPair(verifier=verifier, challenge=challenge)


def normalize_groups(value: Any) -> frozenset[str]:
    """Providers send groups as a list, a single string, or not at all."""
    if isinstance(value, str):
        return frozenset([value]) if value else frozenset()
    if isinstance(value, (list, tuple)):
        return frozenset(v for v in value if isinstance(v, str) and v)
    return frozenset()


# ------------------------------------------------------------------
# Client
# ------------------------------------------------------------------


class OIDCClient:
    """Talks to one OpenID provider.

    *transport* is handed to every ``httpx.AsyncClient`` the client
    creates; tests use it to plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        config: OIDCConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._metadata: ProviderMetadata | None = None
        self._jwks: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def config(self) -> OIDCConfig:
        return self._config

    def _require_enabled(self) -> None:
        if not self._config.enabled:
            raise OIDCDisabled()

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._config.timeout, transport=self._transport)

    # -------------------------------------------------------------- discovery

    async def discover(self) -> ProviderMetadata:
        self._require_enabled()
        if self._metadata is not None:
            return self._metadata
        async with self._lock:
            if self._metadata is None:
                url = f"{self._config.issuer}/.well-known/openid-configuration"
                try:
                    async with self._http() as client:
                        resp = await client.get(url, headers={"Accept": "application/json"})
                        resp.raise_for_status()
                        metadata = ProviderMetadata.from_dict(resp.json())
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning("OIDC discovery at %s failed: %s", url, exc)
                    raise ExchangeFailed() from exc
                if metadata.issuer.rstrip("/") != self._config.issuer.rstrip("/"):
                    logger.warning(
                        "OIDC issuer mismatch: configured %s, provider says %s",
                        self._config.issuer,
                        metadata.issuer,
                    )
                    raise ExchangeFailed()
                self._metadata = metadata
        return self._metadata

    async def _fetch_jwks(self, metadata: ProviderMetadata) -> dict[str, Any]:
        try:
            async with self._http() as client:
                resp = await client.get(
                    metadata.jwks_uri, headers={"Accept": "application/json"}
                )
                resp.raise_for_status()
                jwks = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Fetching JWKS from %s failed: %s", metadata.jwks_uri, exc)
            raise InvalidIDToken() from exc
        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            logger.warning("JWKS at %s has no 'keys' array", metadata.jwks_uri)
            raise InvalidIDToken()
        return jwks

    async def _signing_keys(
        self, metadata: ProviderMetadata, kid: str | None
    ) -> dict[str, Any]:
        """JWKS narrowed to *kid*; refetched once when the kid is unknown."""
        if self._jwks is None:
            self._jwks = await self._fetch_jwks(metadata)
        keys = _matching_keys(self._jwks, kid)
        if not keys:
            logger.info("Unknown signing key %r, refreshing JWKS", kid)
            self._jwks = await self._fetch_jwks(metadata)
            keys = _matching_keys(self._jwks, kid)
        if not keys:
            raise InvalidIDToken("ID token signed with an unknown key")
        return {"keys": keys}

    # -------------------------------------------------------------- login

    async def build_authorization_request(self) -> AuthorizationRequest:
        metadata = await self.discover()
        state = secrets.token_urlsafe(32)
        pkce = generate_pkce()
        params = {
            "response_type": "code",
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_url,
            "scope": " ".join(self._config.scopes),
            "state": state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
        }
        sep = "&" if "?" in metadata.authorization_endpoint else "?"
        return AuthorizationRequest(
            url=f"{metadata.authorization_endpoint}{sep}{urlencode(params)}",
            state=state,
            code_verifier=pkce.verifier,
        )

    async def exchange_code(self, code: str, code_verifier: str) -> TokenResponse:
        metadata = await self.discover()
        try:
            async with self._http() as client:
                resp = await client.post(
                    metadata.token_endpoint,
                    data={
                        "grant_type": "authorization_code",
                        "code": code,
                        "redirect_uri": self._config.redirect_url,
                        "client_id": self._config.client_id,
                        "code_verifier": code_verifier,
                    },
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.warning("Token exchange transport error: %s", exc)
            raise ExchangeFailed() from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if resp.is_error or "error" in data:
            detail = data.get("error_description") or data.get("error") or resp.text[:200]
            logger.warning(
                "Token exchange rejected (HTTP %d): %s", resp.status_code, detail
            )
            raise ExchangeFailed()

        access_token = data.get("access_token")
        id_token = data.get("id_token")
        if not isinstance(access_token, str) or not isinstance(id_token, str):
            logger.warning("Token response lacks access_token or id_token")
            raise ExchangeFailed()

        return TokenResponse(
            access_token=access_token,
            id_token=id_token,
            token_type=data.get("token_type", "Bearer"),
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            scope=data.get("scope"),
        )

    # -------------------------------------------------------------- tokens

    async def verify_id_token(
        self, raw: str, *, access_token: str | None = None
    ) -> dict[str, Any]:
        """Verify signature, issuer, audience and expiry; return the claims."""
        metadata = await self.discover()
        try:
            header = jwt.get_unverified_header(raw)
        except JWTError as exc:
            raise InvalidIDToken() from exc

        keys = await self._signing_keys(metadata, header.get("kid"))
        try:
            claims = jwt.decode(
                raw,
                keys,
                algorithms=list(metadata.signing_algs),
                audience=self._config.client_id,
                issuer=metadata.issuer,
                access_token=access_token,
            )
        except JWTError as exc:
            logger.warning("ID token rejected: %s", exc)
            raise InvalidIDToken() from exc
        return claims

    def extract_claims(self, claims: dict[str, Any]) -> IdentityClaims:
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidIDToken("ID token has no subject")
        email = claims.get("email")
        name = claims.get("name") or claims.get("preferred_username")
        return IdentityClaims(
            subject=subject,
            email=email if isinstance(email, str) else "",
            email_verified=claims.get("email_verified") is True,
            name=name if isinstance(name, str) else "",
            groups=normalize_groups(claims.get(self._config.groups_claim)),
        )

    async def fetch_userinfo(self, access_token: str) -> dict[str, Any]:
        metadata = await self.discover()
        if not metadata.userinfo_endpoint:
            logger.warning("Provider %s has no userinfo endpoint", metadata.issuer)
            raise ExchangeFailed()
        try:
            async with self._http() as client:
                resp = await client.get(
                    metadata.userinfo_endpoint,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Userinfo request failed: %s", exc)
            raise ExchangeFailed() from exc
        if not isinstance(data, dict):
            raise ExchangeFailed()
        return data


def _matching_keys(jwks: dict[str, Any], kid: str | None) -> list[dict[str, Any]]:
    keys = [k for k in jwks.get("keys", []) if isinstance(k, dict)]
    if kid is None:
        return keys
    return [k for k in keys if k.get("kid") == kid]
