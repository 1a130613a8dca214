"""Local OAuth2 authorization-code grant (RFC 6749) with PKCE and resource indicators."""

from __future__ import annotations

import html
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional
from urllib.parse import quote, urlencode, urlparse

from authcore.logging import get_logger
from authcore.service.errors import (
    InvalidGrant,
    InvalidRequest,
    UnsupportedGrantType,
    UnsupportedResponseType,
)
from authcore.service.pkce import (
    METHOD_PLAIN,
    METHOD_S256,
    SUPPORTED_METHODS,
    verify_code_challenge,
)
from authcore.service.sessions import SessionRecord, SessionStore
from authcore.storage.models import AuthorizationCodeRecord, AuthorizationCodeStore

logger = get_logger(__name__)

CODE_PREFIX = "code_"
LOCAL_PROVIDER = "local"


@dataclass
class AuthorizeOutcome:
    """Where ``/authorize`` sends the browser next.

    ``html`` is set for custom-scheme redirect URIs, which some browsers
    refuse to follow from a bare 302.
    """

    location: str
    requires_login: bool = False
    html: Optional[str] = None
    code: Optional[str] = None


def _append_query(url: str, params: Mapping[str, str]) -> str:
    separator = "&" if urlparse(url).query else "?"
    return f"{url}{separator}{urlencode(params)}"


def custom_scheme_redirect_page(location: str) -> str:
    escaped = html.escape(location, quote=True)
    # keep "</script>" out of the inline script
    script_url = json.dumps(location).replace("<", "\\u003c")
    return (
        "<!DOCTYPE html>\n"
        "<html><head><meta charset=\"utf-8\"><title>Redirecting</title>\n"
        f"<meta http-equiv=\"refresh\" content=\"0;url={escaped}\">\n"
        "</head><body>\n"
        f"<p>Returning to the application. <a href=\"{escaped}\">Continue</a></p>\n"
        f"<script>window.location.href = {script_url};</script>\n"
        "</body></html>\n"
    )


class LocalAuthorizationServer:
    """Issues one-time codes to tool clients and redeems them for bearer tokens.

    Identity always comes from an existing first-party session; callers
    without one are sent to the login page with the original request kept
    in ``redirect`` so the grant resumes after sign-in.
    """

    def __init__(
        self,
        codes: AuthorizationCodeStore,
        sessions: SessionStore,
        *,
        code_ttl: timedelta = timedelta(minutes=10),
        login_path: str = "/auth/login",
        require_pkce: bool = False,
    ) -> None:
        self.codes = codes
        self.sessions = sessions
        self.code_ttl = code_ttl
        self.login_path = login_path
        self.require_pkce = require_pkce

    @property
    def supported_challenge_methods(self) -> list[str]:
        if self.require_pkce:
            return [METHOD_S256]
        return list(SUPPORTED_METHODS)

    def authorize(
        self,
        params: Mapping[str, str],
        caller_session: Optional[SessionRecord],
        *,
        return_to: Optional[str] = None,
    ) -> AuthorizeOutcome:
        response_type = params.get("response_type")
        if response_type != "code":
            raise UnsupportedResponseType(
                f"response_type must be 'code', got {response_type!r}"
            )
        client_id = params.get("client_id")
        if not client_id:
            raise InvalidRequest("client_id is required")
        redirect_uri = params.get("redirect_uri")
        if not redirect_uri:
            raise InvalidRequest("redirect_uri is required")
        parsed = urlparse(redirect_uri)
        if not parsed.scheme:
            raise InvalidRequest("redirect_uri must be an absolute URI")

        code_challenge = params.get("code_challenge") or None
        method = params.get("code_challenge_method") or None
        if code_challenge:
            # RFC 7636 4.3: plain is the default
            method = method or METHOD_PLAIN
            if method not in self.supported_challenge_methods:
                raise InvalidRequest(f"unsupported code_challenge_method: {method}")
        elif method:
            raise InvalidRequest("code_challenge_method given without code_challenge")
        elif self.require_pkce:
            raise InvalidRequest("code_challenge is required")

        if caller_session is None:
            target = return_to or f"/oauth2/authorize?{urlencode(dict(params))}"
            location = f"{self.login_path}?redirect={quote(target, safe='')}"
            logger.info("authorize_login_required", client_id=client_id)
            return AuthorizeOutcome(location=location, requires_login=True)

        record = AuthorizationCodeRecord.new(
            caller_session.user_id,
            client_id,
            redirect_uri,
            ttl=self.code_ttl,
            code_challenge=code_challenge,
            code_challenge_method=method,
            scope=params.get("scope") or None,
            resource=params.get("resource") or None,
        )
        self.codes.save_authorization_code(record)
        logger.info(
            "authorization_code_issued",
            client_id=client_id,
            user_id=caller_session.user_id,
            pkce=bool(code_challenge),
        )

        query = {"code": record.code}
        if params.get("state"):
            query["state"] = params["state"]
        location = _append_query(redirect_uri, query)
        page = None
        if parsed.scheme not in ("http", "https"):
            page = custom_scheme_redirect_page(location)
        return AuthorizeOutcome(location=location, html=page, code=record.code)

    def token(
        self,
        grant_type: Optional[str],
        code: Optional[str],
        redirect_uri: Optional[str] = None,
        code_verifier: Optional[str] = None,
        client_id: Optional[str] = None,
        *,
        ip_addr: str = "unknown",
        user_agent: str = "unknown",
    ) -> dict:
        if grant_type != "authorization_code":
            raise UnsupportedGrantType(f"unsupported grant_type: {grant_type!r}")
        if not code or not code.startswith(CODE_PREFIX):
            raise InvalidRequest("missing or malformed code")

        record = self.codes.redeem_authorization_code(code, datetime.now(timezone.utc))

        if redirect_uri is not None and redirect_uri != record.redirect_uri:
            logger.warning("authorization_code_redirect_mismatch", client_id=record.client_id)
            raise InvalidGrant("redirect_uri does not match the authorization request")
        if client_id is not None and client_id != record.client_id:
            logger.warning("authorization_code_client_mismatch", client_id=client_id)
            raise InvalidGrant("client_id does not match the authorization request")
        if record.code_challenge:
            if not code_verifier:
                raise InvalidRequest("code_verifier is required")
            if not verify_code_challenge(
                code_verifier, record.code_challenge, record.code_challenge_method
            ):
                logger.warning("pkce_verification_failed", client_id=record.client_id)
                raise InvalidGrant("PKCE verification failed")

        # Role flags are not looked up for locally issued tokens
        access_token = self.sessions.create_session(
            record.user_id,
            LOCAL_PROVIDER,
            ip_addr=ip_addr,
            user_agent=user_agent,
            is_admin=False,
            is_editor=False,
            audience=record.resource,
        )
        logger.info(
            "authorization_code_redeemed", client_id=record.client_id, user_id=record.user_id
        )
        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": int(self.sessions.session_timeout.total_seconds()),
            "scope": record.scope or "",
        }

    def metadata(self, issuer: str) -> dict:
        """RFC 8414 authorization server metadata."""

        issuer = issuer.rstrip("/")
        return {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/oauth2/authorize",
            "token_endpoint": f"{issuer}/oauth2/token",
            "response_types_supported": ["code"],
            "response_modes_supported": ["query"],
            "grant_types_supported": ["authorization_code"],
            "code_challenge_methods_supported": self.supported_challenge_methods,
            "token_endpoint_auth_methods_supported": ["none", "client_secret_post"],
            "resource_indicators_supported": True,
            "ui_locales_supported": ["en"],
        }

    def sweep_expired_codes(self) -> int:
        removed = self.codes.delete_expired_authorization_codes(datetime.now(timezone.utc))
        if removed:
            logger.info("authorization_codes_swept", count=removed)
        return removed
