"""JWKS retrieval and RS256 id_token verification shared by all providers."""

from __future__ import annotations

import asyncio
import base64
import binascii
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

from authcore.logging import get_logger
from authcore.service.errors import JwtError

logger = get_logger(__name__)

JwksFetcher = Callable[[str], Awaitable[Any]]


def _b64url_uint(value: str) -> int:
    try:
        raw = base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))
    except (binascii.Error, ValueError) as exc:
        raise JwtError("malformed JWK component") from exc
    return int.from_bytes(raw, "big")


def rsa_key_from_jwk(jwk: dict) -> rsa.RSAPublicKey:
    """Build an RSA public key from the ``n``/``e`` members of a JWK."""

    if jwk.get("kty", "RSA") != "RSA":
        raise JwtError(f"unsupported JWK key type: {jwk.get('kty')}")
    n, e = jwk.get("n"), jwk.get("e")
    if not isinstance(n, str) or not n:
        raise JwtError("missing 'n' in JWK")
    if not isinstance(e, str) or not e:
        raise JwtError("missing 'e' in JWK")
    try:
        return rsa.RSAPublicNumbers(_b64url_uint(e), _b64url_uint(n)).public_key()
    except ValueError as exc:
        raise JwtError(f"invalid RSA JWK: {exc}") from exc


class JwksCache:
    """Per-URL cache of JWKS documents with a TTL.

    A key id that is missing from a cached set triggers exactly one refetch
    before the lookup fails, which covers provider key rotation.
    """

    def __init__(self, ttl_seconds: float = 3600) -> None:
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[float, list]] = {}
        self._lock = asyncio.Lock()

    def _cached(self, url: str) -> Optional[list]:
        entry = self._entries.get(url)
        if entry is None:
            return None
        fetched_at, keys = entry
        if time.monotonic() - fetched_at > self.ttl_seconds:
            return None
        return keys

    async def _load(self, url: str, fetch: JwksFetcher) -> list:
        document = await fetch(url)
        keys = document.get("keys") if isinstance(document, dict) else None
        if not isinstance(keys, list):
            raise JwtError("invalid JWKS format")
        self._entries[url] = (time.monotonic(), keys)
        logger.info("jwks_fetched", url=url, key_count=len(keys))
        return keys

    async def get_key(self, url: str, kid: str, fetch: JwksFetcher) -> rsa.RSAPublicKey:
        async with self._lock:
            keys = self._cached(url)
            refreshed = keys is None
            if keys is None:
                keys = await self._load(url, fetch)
            match = _find_key(keys, kid)
            if match is None and not refreshed:
                logger.info("jwks_kid_miss_refresh", url=url, kid=kid)
                keys = await self._load(url, fetch)
                match = _find_key(keys, kid)
        if match is None:
            raise JwtError(f"key id {kid} not found in JWKS")
        return rsa_key_from_jwk(match)

    def clear(self) -> None:
        self._entries.clear()


def _find_key(keys: Iterable[Any], kid: str) -> Optional[dict]:
    for key in keys:
        if isinstance(key, dict) and key.get("kid") == kid:
            return key
    return None


def unverified_kid(token: str) -> str:
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise JwtError(f"failed to decode token header: {exc}") from exc
    if header.get("alg") != "RS256":
        raise JwtError(f"unexpected id_token algorithm: {header.get('alg')}")
    kid = header.get("kid")
    if not kid:
        raise JwtError("missing kid in token header")
    return kid


def decode_id_token(
    token: str,
    key: rsa.RSAPublicKey,
    *,
    audience: str,
    issuers: Iterable[str],
    leeway: int = 60,
) -> dict:
    """Verify signature, expiry, audience and issuer; return the claims."""

    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=audience,
            leeway=leeway,
            options={"require": ["exp", "iss", "sub", "aud"]},
        )
    except jwt.PyJWTError as exc:
        raise JwtError(f"ID token validation failed: {exc}") from exc
    allowed = tuple(issuers)
    if claims.get("iss") not in allowed:
        raise JwtError(f"ID token issuer not allowed: {claims.get('iss')}")
    return claims


async def verify_id_token(
    token: str,
    *,
    jwks_url: str,
    cache: JwksCache,
    fetch: JwksFetcher,
    audience: str,
    issuers: Iterable[str],
) -> dict:
    kid = unverified_kid(token)
    key = await cache.get_key(jwks_url, kid, fetch)
    return await asyncio.to_thread(
        decode_id_token, token, key, audience=audience, issuers=tuple(issuers)
    )
