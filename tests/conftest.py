import asyncio
import base64
import inspect
import os
import sys
import time
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

# Apple signs client secrets with an ES256 team key; generate a throwaway one
_apple_key = ec.generate_private_key(ec.SECP256R1())
APPLE_PRIVATE_KEY_PEM = _apple_key.private_bytes(
    serialization.Encoding.PEM,
    serialization.PrivateFormat.PKCS8,
    serialization.NoEncryption(),
).decode()

# Environment must be in place before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_ENCRYPTION_KEY", "test-session-key-material-do-not-use-in-production")
os.environ.setdefault("OAUTH_STATE_SECRET", "test-state-secret-do-not-use-in-production")
os.environ.setdefault("OAUTH_REDIRECT_BASE", "http://testserver")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "google-client-id")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_SECRET", "google-client-secret")
os.environ.setdefault("OAUTH_MICROSOFT_CLIENT_ID", "microsoft-client-id")
os.environ.setdefault("OAUTH_MICROSOFT_CLIENT_SECRET", "microsoft-client-secret")
os.environ.setdefault("OAUTH_MICROSOFT_TENANT_ID", "test-tenant")
os.environ.setdefault("OAUTH_APPLE_CLIENT_ID", "com.example.web")
os.environ.setdefault("OAUTH_APPLE_TEAM_ID", "TEAM123456")
os.environ.setdefault("OAUTH_APPLE_KEY_ID", "KEY1234567")
os.environ.setdefault("OAUTH_APPLE_PRIVATE_KEY", APPLE_PRIVATE_KEY_PEM)
os.environ.setdefault("BOOTSTRAP_ADMINS", "admin@example.com")
os.environ.setdefault("AUTH_RATE_LIMIT_PER_MINUTE", "1000")

import jwt  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_KID = "test-kid"


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def rsa_jwk(private_key: rsa.RSAPrivateKey, kid: str = TEST_KID) -> dict:
    numbers = private_key.public_key().public_numbers()
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": "RS256",
        "use": "sig",
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks_document(rsa_private_key) -> dict:
    return {"keys": [rsa_jwk(rsa_private_key)]}


@pytest.fixture(scope="session")
def apple_private_key() -> ec.EllipticCurvePrivateKey:
    return _apple_key


@pytest.fixture
def make_jwk():
    return rsa_jwk


@pytest.fixture
def make_id_token(rsa_private_key):
    """Return a factory for RS256 id_tokens signed with the test key."""

    def _make(claims: dict, *, kid: str = TEST_KID, key=None) -> str:
        now = int(time.time())
        payload = {"iat": now, "exp": now + 300, **claims}
        return jwt.encode(
            payload, key or rsa_private_key, algorithm="RS256", headers={"kid": kid}
        )

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
