"""Caller authentication: ID token verification and the identity allow-list.

Tokens are OpenID Connect ID tokens signed by the identity provider. The
provider's public keys are fetched from its JWKS endpoint and cached; an
unknown key id forces a (rate-limited) refresh so key rotation is picked up
without a restart.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx
import jwt

from config import (
    ALLOWED_EMAIL,
    JWKS_CACHE_TTL,
    JWKS_MIN_REFRESH_INTERVAL,
    JWKS_URL,
    OAUTH_CLIENT_ID,
    OAUTH_ISSUERS,
)

logger = logging.getLogger("relay.auth")

TOKEN_HEADER = "X-Clawd-Token"
TOKEN_QUERY_PARAM = "token"


@dataclass(frozen=True)
class Identity:
    subject: str
    email: str = ""

    @property
    def name(self) -> str:
        return self.email or self.subject


def is_allowed(identity: Identity, allowed_email: str = ALLOWED_EMAIL) -> bool:
    """Case-insensitive match against the single allow-listed address."""
    if not allowed_email or not identity.email:
        return False
    return identity.email.strip().lower() == allowed_email.strip().lower()


def extract_token(request) -> Optional[str]:
    """Pull the caller's token from a request.

    Checks (in order):
    1. Authorization: Bearer <token> header
    2. X-Clawd-Token header
    3. ?token= query parameter (EventSource cannot set headers)
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    token = request.headers.get(TOKEN_HEADER, "").strip()
    if token:
        return token
    token = request.query_params.get(TOKEN_QUERY_PARAM, "").strip()
    return token or None


def _find_key(jwks: Optional[jwt.PyJWKSet], kid: str) -> Optional[jwt.PyJWK]:
    if jwks is None:
        return None
    for key in jwks.keys:
        if key.key_id == kid:
            return key
    return None


class TokenVerifier:
    """Verifies ID tokens and applies the allow-list.

    verify() never raises: every failure (network, signature, claims,
    allow-list) is logged and collapses to None.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        jwks_url: str = JWKS_URL,
        audience: str = OAUTH_CLIENT_ID,
        issuers: Optional[list[str]] = None,
        allowed_email: str = ALLOWED_EMAIL,
        cache_ttl: float = JWKS_CACHE_TTL,
        min_refresh_interval: float = JWKS_MIN_REFRESH_INTERVAL,
        algorithms: tuple[str, ...] = ("RS256",),
    ):
        self._http = http_client
        self._jwks_url = jwks_url
        self._audience = audience
        self._issuers = list(issuers if issuers is not None else OAUTH_ISSUERS)
        self._allowed_email = allowed_email
        self._cache_ttl = cache_ttl
        self._min_refresh_interval = min_refresh_interval
        self._algorithms = list(algorithms)

        self._jwks: Optional[jwt.PyJWKSet] = None
        self._jwks_ts = 0.0
        self._last_fetch = 0.0
        self._fetch_lock = asyncio.Lock()

    async def verify(self, token: Optional[str]) -> Optional[Identity]:
        """Return the caller's Identity, or None if unverified or not allowed."""
        if not token:
            return None
        try:
            identity = await self._decode(token)
        except Exception as e:
            logger.info("Token rejected: %s", e)
            return None
        if not is_allowed(identity, self._allowed_email):
            logger.warning("Identity %s is not on the allow-list", identity.name)
            return None
        return identity

    async def _decode(self, token: str) -> Identity:
        header = jwt.get_unverified_header(token)
        kid = header.get("kid")
        if not kid:
            raise jwt.InvalidTokenError("token header has no key id")

        key = await self._signing_key(kid)
        if key is None:
            raise jwt.InvalidTokenError(f"no signing key for kid {kid!r}")

        claims = jwt.decode(
            token,
            key.key,
            algorithms=self._algorithms,
            audience=self._audience,
            issuer=self._issuers,
            options={"require": ["exp", "iat", "sub"]},
        )
        if claims.get("email_verified") in (False, "false"):
            raise jwt.InvalidTokenError("email address is not verified")
        email = claims.get("email")
        if not isinstance(email, str):
            email = ""
        return Identity(subject=str(claims["sub"]), email=email)

    async def _signing_key(self, kid: str) -> Optional[jwt.PyJWK]:
        key = _find_key(await self._get_jwks(), kid)
        if key is None and time.time() - self._last_fetch >= self._min_refresh_interval:
            # Possibly a rotated key the cache has not seen yet
            key = _find_key(await self._get_jwks(force=True), kid)
        return key

    async def _get_jwks(self, force: bool = False) -> Optional[jwt.PyJWKSet]:
        """Fetch the provider's key set with caching.

        On fetch failure the previous (possibly stale) set is returned.
        """
        async with self._fetch_lock:
            now = time.time()
            if not force and self._jwks is not None and (now - self._jwks_ts) < self._cache_ttl:
                return self._jwks

            self._last_fetch = now
            try:
                resp = await self._http.get(self._jwks_url, timeout=5.0)
                resp.raise_for_status()
                jwks = jwt.PyJWKSet.from_dict(resp.json())
            except Exception as e:
                logger.warning("Failed to fetch signing keys from %s: %s", self._jwks_url, e)
                return self._jwks

            self._jwks = jwks
            self._jwks_ts = now
            logger.debug("Loaded %d signing keys", len(jwks.keys))
            return jwks
