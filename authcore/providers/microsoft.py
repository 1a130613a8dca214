from __future__ import annotations

from typing import Optional

from authcore.providers.base import (
    BaseProvider,
    IdentityClaims,
    ProviderConfig,
    ProviderKind,
    TokenResponse,
    reattach_refresh_token,
)
from authcore.service.errors import JwtError, OAuth2Error

MICROSOFT_LOGIN_HOST = "https://login.microsoftonline.com"
MICROSOFT_GRAPH_ME_URL = "https://graph.microsoft.com/v1.0/me"
DEFAULT_TENANT = "common"
DEFAULT_SCOPES = ("openid", "email", "profile", "User.Read")
REQUIRED_SCOPES = ("openid", "User.Read")


class MicrosoftProvider(BaseProvider):
    """Microsoft identity platform (v2.0 endpoints) client.

    Graph does not expose a verification flag, so ``email_verified`` is
    inferred from the presence of an address. This is weaker than the
    Google and Apple checks.
    """

    kind = ProviderKind.MICROSOFT

    def __init__(self, config: ProviderConfig, **kwargs) -> None:
        scopes = list(config.scopes or DEFAULT_SCOPES)
        for scope in REQUIRED_SCOPES:
            if scope not in scopes:
                scopes.append(scope)
        super().__init__(config.with_scopes(scopes), **kwargs)
        self.tenant_id = self.config.extra_params.get("tenant_id") or DEFAULT_TENANT

    @property
    def auth_url(self) -> str:
        return self.config.auth_url or (
            f"{MICROSOFT_LOGIN_HOST}/{self.tenant_id}/oauth2/v2.0/authorize"
        )

    @property
    def token_url(self) -> str:
        return self.config.token_url or (
            f"{MICROSOFT_LOGIN_HOST}/{self.tenant_id}/oauth2/v2.0/token"
        )

    @property
    def jwks_url(self) -> str:
        return self.config.jwks_url or (
            f"{MICROSOFT_LOGIN_HOST}/{self.tenant_id}/discovery/v2.0/keys"
        )

    def allowed_issuers(self) -> tuple[str, ...]:
        return (f"{MICROSOFT_LOGIN_HOST}/{self.tenant_id}/v2.0",)

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
            "scope": " ".join(self.config.scopes),
            "state": state,
            "response_mode": "query",
        }
        if nonce:
            params["nonce"] = nonce
        if pkce_challenge:
            params["code_challenge"] = pkce_challenge
            params["code_challenge_method"] = "S256"
        if resource:
            params["resource"] = resource
        self._append_extra_params(params, excluded=("tenant_id",))
        return self._build_url(self.auth_url, params)

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
            "scope": " ".join(self.config.scopes),
        }
        if pkce_verifier:
            form["code_verifier"] = pkce_verifier
        if resource:
            form["resource"] = resource
        return await self._post_token_request(form, "token_exchange")

    async def get_user_info(
        self, access_token: str, id_token: Optional[str] = None
    ) -> IdentityClaims:
        if id_token:
            try:
                claims = await self._verify_id_token(id_token)
            except JwtError as exc:
                # Graph is authoritative when the id_token cannot be verified
                self.logger.warning("id_token_verification_failed_using_graph", error=str(exc))
            else:
                return self._id_token_identity(claims)
        payload = await self._get_userinfo(
            self.config.userinfo_url or MICROSOFT_GRAPH_ME_URL, access_token
        )
        return self._graph_identity(payload)

    def _id_token_identity(self, claims: dict) -> IdentityClaims:
        subject = claims.get("sub")
        if not subject:
            raise OAuth2Error("microsoft: id_token is missing a subject")
        email = claims.get("email") or claims.get("preferred_username") or ""
        return IdentityClaims(
            provider_user_id=str(subject),
            email=email,
            email_verified=bool(email),
            name=claims.get("name"),
            raw_claims=dict(claims),
        )

    def _graph_identity(self, user: dict) -> IdentityClaims:
        user_id = user.get("id")
        if not user_id:
            raise OAuth2Error("microsoft: Graph user is missing an id")
        email = user.get("mail") or user.get("userPrincipalName") or ""
        return IdentityClaims(
            provider_user_id=str(user_id),
            email=email,
            email_verified=bool(email),
            name=user.get("displayName"),
            given_name=user.get("givenName"),
            family_name=user.get("surname"),
            locale=user.get("preferredLanguage"),
            raw_claims=dict(user),
        )

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "scope": " ".join(self.config.scopes),
        }
        response = await self._post_token_request(form, "token_refresh")
        return reattach_refresh_token(response, refresh_token)

    async def revoke_token(self, token: str) -> None:
        # The v2.0 endpoint has no revocation API
        self.logger.debug("oauth_revoke_not_supported")
