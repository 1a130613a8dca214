from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from typing import Optional

from authcore.logging import get_logger

logger = get_logger(__name__)


def _b64encode(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode()).decode().rstrip("=")


def _b64decode(value: str) -> str:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4)).decode()


class CsrfStateCodec:
    """Stateless OAuth2 ``state`` tokens bound to provider and client IP.

    Format: ``provider.b64(ip).issued_at.random[.b64(redirect)].signature``
    where the signature is HMAC-SHA256 over everything before it. Nothing is
    stored server side, so any node holding the key can validate a state
    minted by another node.
    """

    def __init__(self, secret_key: bytes, *, ttl_seconds: int = 600) -> None:
        if len(secret_key) < 32:
            raise ValueError("state secret key must be at least 32 bytes")
        self._key = secret_key
        self.ttl_seconds = ttl_seconds

    def _sign(self, payload: str) -> str:
        return hmac.new(self._key, payload.encode(), hashlib.sha256).hexdigest()

    def create_state(
        self, provider: str, ip: str, redirect: Optional[str] = None
    ) -> str:
        parts = [provider, _b64encode(ip), str(int(time.time())), secrets.token_urlsafe(16)]
        if redirect:
            parts.append(_b64encode(redirect))
        # token_urlsafe output never contains "."
        payload = ".".join(parts)
        return f"{payload}.{self._sign(payload)}"

    def _verified_parts(self, state: str) -> Optional[list[str]]:
        if not state or "." not in state:
            return None
        payload, _, signature = state.rpartition(".")
        if not hmac.compare_digest(self._sign(payload).encode(), signature.encode()):
            return None
        parts = payload.split(".")
        if len(parts) not in (4, 5):
            return None
        return parts

    def validate_state(self, state: str, provider: str, ip: str) -> bool:
        parts = self._verified_parts(state)
        if parts is None:
            logger.warning("oauth_state_invalid_signature", provider=provider)
            return False
        state_provider, ip_encoded, issued_at = parts[0], parts[1], parts[2]
        try:
            state_ip = _b64decode(ip_encoded)
            issued = int(issued_at)
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("oauth_state_malformed", provider=provider)
            return False
        if time.time() - issued > self.ttl_seconds:
            logger.warning("oauth_state_expired", provider=provider)
            return False
        if not hmac.compare_digest(state_provider.encode(), provider.encode()):
            logger.warning("oauth_state_provider_mismatch", provider=provider)
            return False
        if not hmac.compare_digest(state_ip.encode(), ip.encode()):
            logger.warning("oauth_state_ip_mismatch", provider=provider)
            return False
        return True

    def extract_redirect(self, state: str) -> Optional[str]:
        parts = self._verified_parts(state)
        if parts is None or len(parts) != 5:
            return None
        try:
            return _b64decode(parts[4])
        except (binascii.Error, UnicodeDecodeError):
            return None

    @staticmethod
    def provider_from_state(state: str) -> Optional[str]:
        """Unverified provider hint, used only to route a callback."""
        provider, sep, _ = (state or "").partition(".")
        return provider if sep else None
