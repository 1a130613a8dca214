from __future__ import annotations

import asyncio
import time
from typing import Optional

import jwt

from authcore.providers.base import (
    BaseProvider,
    IdentityClaims,
    ProviderKind,
    TokenResponse,
    claim_bool,
    reattach_refresh_token,
)
from authcore.service.errors import ConfigError, JwtError, OAuth2Error

APPLE_ISSUER = "https://appleid.apple.com"
APPLE_AUTH_URL = "https://appleid.apple.com/auth/authorize"
APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"
APPLE_JWKS_URL = "https://appleid.apple.com/auth/keys"
APPLE_REVOKE_URL = "https://appleid.apple.com/auth/revoke"
DEFAULT_SCOPES = ("name", "email")
# Apple caps client secrets at six months
CLIENT_SECRET_LIFETIME_SECONDS = 15777000
_SIGNING_PARAMS = ("team_id", "key_id", "private_key")


class AppleProvider(BaseProvider):
    """Sign in with Apple.

    Apple refuses static client secrets: every token call signs a fresh ES256
    JWT with the team's private key. Identity only ever comes from the
    id_token because there is no userinfo endpoint.
    """

    kind = ProviderKind.APPLE

    @property
    def token_url(self) -> str:
        return self.config.token_url or APPLE_TOKEN_URL

    @property
    def jwks_url(self) -> str:
        return self.config.jwks_url or APPLE_JWKS_URL

    def allowed_issuers(self) -> tuple[str, ...]:
        return (APPLE_ISSUER,)

    def client_secret_claims(self, now: Optional[int] = None) -> dict:
        issued_at = int(time.time()) if now is None else now
        return {
            "iss": self.config.extra_params["team_id"],
            "iat": issued_at,
            "exp": issued_at + CLIENT_SECRET_LIFETIME_SECONDS,
            "aud": APPLE_ISSUER,
            "sub": self.config.client_id,
        }

    def _sign_client_secret(self) -> str:
        try:
            return jwt.encode(
                self.client_secret_claims(),
                self.config.extra_params["private_key"],
                algorithm="ES256",
                headers={"kid": self.config.extra_params["key_id"]},
            )
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            raise ConfigError(f"apple: failed to sign client secret: {exc}") from exc

    async def generate_client_secret(self) -> str:
        return await asyncio.to_thread(self._sign_client_secret)

    def authorization_url(
        self,
        state: str,
        nonce: Optional[str] = None,
        pkce_challenge: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.config.scopes or DEFAULT_SCOPES),
            "state": state,
            # Apple posts the callback when name/email scopes are requested
            "response_mode": "form_post",
        }
        if nonce:
            params["nonce"] = nonce
        if pkce_challenge:
            params["code_challenge"] = pkce_challenge
            params["code_challenge_method"] = "S256"
        self._append_extra_params(params, excluded=_SIGNING_PARAMS)
        return self._build_url(self.config.auth_url or APPLE_AUTH_URL, params)

    async def exchange_code(
        self,
        code: str,
        state: str,
        pkce_verifier: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> TokenResponse:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "client_id": self.config.client_id,
            "client_secret": await self.generate_client_secret(),
        }
        if pkce_verifier:
            form["code_verifier"] = pkce_verifier
        return await self._post_token_request(form, "token_exchange")

    async def get_user_info(
        self, access_token: str, id_token: Optional[str] = None
    ) -> IdentityClaims:
        if not id_token:
            raise JwtError("apple: an id_token is required for user info")
        claims = await self._verify_id_token(id_token)
        subject = claims.get("sub")
        if not subject:
            raise OAuth2Error("apple: id_token is missing a subject")
        return IdentityClaims(
            provider_user_id=str(subject),
            email=claims.get("email") or "",
            email_verified=claim_bool(claims.get("email_verified")),
            raw_claims=dict(claims),
        )

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": await self.generate_client_secret(),
        }
        response = await self._post_token_request(form, "token_refresh")
        return reattach_refresh_token(response, refresh_token)

    async def revoke_token(self, token: str) -> None:
        form = {
            "client_id": self.config.client_id,
            "client_secret": await self.generate_client_secret(),
            "token": token,
            "token_type_hint": "refresh_token",
        }
        await self._request_json("POST", APPLE_REVOKE_URL, operation="revoke", data=form)
        self.logger.info("oauth_token_revoked")
