"""RFC 7636 Proof Key for Code Exchange helpers."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import string
from dataclasses import dataclass
from typing import Optional

# Unreserved characters allowed in a code_verifier
_VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128

METHOD_S256 = "S256"
METHOD_PLAIN = "plain"
SUPPORTED_METHODS = (METHOD_S256, METHOD_PLAIN)


def generate_code_verifier(length: Optional[int] = None) -> str:
    if length is None:
        length = MIN_VERIFIER_LENGTH + secrets.randbelow(
            MAX_VERIFIER_LENGTH - MIN_VERIFIER_LENGTH + 1
        )
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise ValueError("code_verifier length must be between 43 and 128")
    return "".join(secrets.choice(_VERIFIER_ALPHABET) for _ in range(length))


def generate_code_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA256(ASCII(code_verifier))) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_code_challenge(
    code_verifier: str, code_challenge: str, method: Optional[str] = METHOD_S256
) -> bool:
    method = method or METHOD_PLAIN
    if method == METHOD_S256:
        try:
            computed = generate_code_challenge(code_verifier)
        except UnicodeEncodeError:
            return False
    elif method == METHOD_PLAIN:
        computed = code_verifier
    else:
        return False
    return hmac.compare_digest(computed.encode(), code_challenge.encode())


@dataclass(frozen=True)
class PkcePair:
    code_verifier: str
    code_challenge: str

    @classmethod
    def generate(cls) -> "PkcePair":
        verifier = generate_code_verifier()
        return cls(code_verifier=verifier, code_challenge=generate_code_challenge(verifier))

    def verify(self, verifier: str) -> bool:
        return verify_code_challenge(verifier, self.code_challenge, METHOD_S256)


def is_valid_code_verifier(code_verifier: str) -> bool:
    return MIN_VERIFIER_LENGTH <= len(code_verifier) <= MAX_VERIFIER_LENGTH and all(
        ch in _VERIFIER_ALPHABET for ch in code_verifier
    )
