from __future__ import annotations

from typing import Optional

from authcore.providers.base import (
    BaseProvider,
    IdentityClaims,
    ProviderKind,
    TokenResponse,
    claim_bool,
    reattach_refresh_token,
)
from authcore.service.errors import OAuth2Error

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")
DEFAULT_SCOPES = ("openid", "email", "profile")


class GoogleProvider(BaseProvider):
    """Google OpenID Connect client."""

    kind = ProviderKind.GOOGLE

    @property
    def token_url(self) -> str:
        return self.config.token_url or GOOGLE_TOKEN_URL

    @property
    def jwks_url(self) -> str:
        return self.config.jwks_url or GOOGLE_JWKS_URL

    def allowed_issuers(self) -> tuple[str, ...]:
        return GOOGLE_ISSUERS

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
            # offline + consent forces Google to hand out a refresh token
            "access_type": "offline",
            "prompt": "consent",
        }
        if nonce:
            params["nonce"] = nonce
        if pkce_challenge:
            params["code_challenge"] = pkce_challenge
            params["code_challenge_method"] = "S256"
        self._append_extra_params(params)
        return self._build_url(self.config.auth_url or GOOGLE_AUTH_URL, params)

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
            "client_secret": self.config.client_secret,
        }
        if pkce_verifier:
            form["code_verifier"] = pkce_verifier
        return await self._post_token_request(form, "token_exchange")

    async def get_user_info(
        self, access_token: str, id_token: Optional[str] = None
    ) -> IdentityClaims:
        if id_token:
            claims = await self._verify_id_token(id_token)
            return self._claims_to_identity(claims)
        payload = await self._get_userinfo(
            self.config.userinfo_url or GOOGLE_USERINFO_URL, access_token
        )
        return self._claims_to_identity(payload)

    def _claims_to_identity(self, claims: dict) -> IdentityClaims:
        subject = claims.get("sub")
        if not subject:
            raise OAuth2Error("google: identity is missing a subject")
        return IdentityClaims(
            provider_user_id=str(subject),
            email=claims.get("email") or "",
            email_verified=claim_bool(claims.get("email_verified")),
            name=claims.get("name"),
            given_name=claims.get("given_name"),
            family_name=claims.get("family_name"),
            picture=claims.get("picture"),
            locale=claims.get("locale"),
            raw_claims=dict(claims),
        )

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        response = await self._post_token_request(form, "token_refresh")
        return reattach_refresh_token(response, refresh_token)

    async def revoke_token(self, token: str) -> None:
        await self._request_json(
            "POST", GOOGLE_REVOKE_URL, operation="revoke", data={"token": token}
        )
        self.logger.info("oauth_token_revoked")
