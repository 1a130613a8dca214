from __future__ import annotations

import asyncio
import html
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Form, HTTPException, Path, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from authcore.api.error_handling import NO_STORE_HEADERS
from authcore.api.schemas import (
    AuthStatusResponse,
    CallbackErrorResponse,
    Envelope,
    ProvidersResponse,
    SessionInfoResponse,
    TokenResponseBody,
    UserSummary,
)
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    AuthError,
    EmailNotVerified,
    InvalidSession,
    InvalidState,
    ProviderTimeout,
    RateLimitExceeded,
    SessionError,
    SessionNotFound,
    UnsupportedProvider,
)
from authcore.service.runtime import Runtime, get_runtime
from authcore.service.sessions import SessionRecord

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/auth", tags=["auth"])
oauth_router = APIRouter(tags=["oauth2"])

MCP_PREFIX = "/mcp"
mcp_router = APIRouter(prefix=MCP_PREFIX, tags=["mcp"])

_PROVIDER_LABELS = {
    "google": "Sign in with Google",
    "microsoft": "Sign in with Microsoft",
    "apple": "Sign in with Apple",
}

# Short browser-facing messages; provider details stay in the logs
_CALLBACK_MESSAGES = (
    (InvalidState, "invalid or expired login state, please try again"),
    (EmailNotVerified, "email address is not verified with the identity provider"),
    (ProviderTimeout, "identity provider did not respond, please try again"),
)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"


def safe_redirect(target: Optional[str]) -> str:
    """Only same-site relative paths are followed after login or logout."""
    if target and target.startswith("/") and not target.startswith("//") and "\\" not in target:
        return target
    return "/"


def session_token(request: Request, settings: Settings) -> Optional[str]:
    token = request.cookies.get(settings.cookie_name)
    if token:
        return token
    authorization = request.headers.get("authorization") or ""
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def _set_session_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        settings.cookie_name,
        token,
        max_age=settings.session_timeout_seconds,
        path=settings.cookie_path,
        domain=settings.cookie_domain,
        secure=settings.cookie_secure,
        httponly=settings.cookie_http_only,
        samesite=settings.cookie_same_site.value,
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.cookie_name,
        path=settings.cookie_path,
        domain=settings.cookie_domain,
        secure=settings.cookie_secure,
        httponly=settings.cookie_http_only,
        samesite=settings.cookie_same_site.value,
    )


async def _current_session(runtime: Runtime, request: Request) -> Optional[SessionRecord]:
    token = session_token(request, runtime.settings)
    if not token:
        return None
    try:
        return await runtime.auth.get_session(token, client_ip(request), user_agent(request))
    except SessionError as exc:
        logger.info("session_rejected", path=request.url.path, reason=exc.error_code)
        return None


def _callback_error(status_code: int, message: str, **extra) -> JSONResponse:
    body = CallbackErrorResponse(message=message, **extra)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def render_login_page(providers: list[str], redirect: str) -> str:
    target = quote(redirect, safe="/")
    buttons = "\n".join(
        f'    <li><a class="provider provider-{html.escape(name)}" '
        f'href="/auth/login/{html.escape(name)}?redirect={html.escape(target)}">'
        f"{html.escape(_PROVIDER_LABELS.get(name, name))}</a></li>"
        for name in providers
    )
    if not buttons:
        buttons = "    <li>No sign-in providers are configured.</li>"
    return (
        "<!DOCTYPE html>\n"
        "<html><head><meta charset=\"utf-8\"><title>Sign in</title></head>\n"
        "<body>\n"
        "  <h1>Sign in</h1>\n"
        "  <ul>\n"
        f"{buttons}\n"
        "  </ul>\n"
        "</body></html>\n"
    )


# -- provider login -----------------------------------------------------------


@auth_router.get("/login", response_class=HTMLResponse)
async def login_page(redirect: Optional[str] = Query(None, max_length=2048)):
    runtime = get_runtime()
    page = render_login_page(runtime.auth.list_providers(), safe_redirect(redirect))
    return HTMLResponse(page)


@auth_router.get("/providers", response_model=Envelope)
async def list_providers():
    runtime = get_runtime()
    return Envelope(
        status="ok", data=ProvidersResponse(providers=runtime.auth.list_providers())
    )


@auth_router.get("/login/{provider}")
async def login_redirect(
    request: Request,
    provider: str = Path(..., max_length=32),
    redirect: Optional[str] = Query(None, max_length=2048),
):
    runtime = get_runtime()
    url, _ = await runtime.auth.start_login(
        provider, client_ip(request), safe_redirect(redirect)
    )
    return RedirectResponse(url, status_code=307)


@auth_router.api_route("/callback/{provider}", methods=["GET", "POST"])
async def oauth_callback(request: Request, provider: str = Path(..., max_length=32)):
    """Finish a provider login.

    Apple posts the callback as a form (``response_mode=form_post``); the
    others redirect with query parameters.
    """
    runtime = get_runtime()
    if request.method == "POST":
        params = dict(await request.form())
    else:
        params = dict(request.query_params)

    provider_error = params.get("error")
    if provider_error:
        logger.warning("oauth_provider_error", provider=provider, error=provider_error)
        runtime.auditor.log_auth_failure(
            provider, f"provider_error: {provider_error}", client_ip(request)
        )
        return _callback_error(
            400,
            "identity provider returned an error",
            error=str(provider_error),
            error_description=params.get("error_description"),
        )

    code, state = params.get("code"), params.get("state")
    if not code or not state:
        return _callback_error(400, "missing code or state parameter")

    try:
        token = await runtime.auth.handle_callback(
            provider, str(code), str(state), client_ip(request), user_agent(request)
        )
    except (RateLimitExceeded, UnsupportedProvider):
        raise
    except AuthError as exc:
        logger.warning(
            "oauth_callback_failed",
            provider=provider,
            error_code=exc.error_code,
            error=str(exc),
        )
        message = next(
            (text for kind, text in _CALLBACK_MESSAGES if isinstance(exc, kind)),
            "authentication failed",
        )
        return _callback_error(exc.status_code, message)

    target = safe_redirect(runtime.auth.extract_redirect(str(state)))
    # 303 turns Apple's form POST into a GET on the target
    response = RedirectResponse(target, status_code=303 if request.method == "POST" else 302)
    _set_session_cookie(response, token, runtime.settings)
    return response


@auth_router.api_route("/logout", methods=["GET", "POST"])
async def logout(request: Request, redirect: Optional[str] = Query(None, max_length=2048)):
    runtime = get_runtime()
    token = session_token(request, runtime.settings)
    if token:
        try:
            await runtime.auth.logout(token)
        except SessionNotFound:
            logger.info("logout_session_not_found")
    response = RedirectResponse(safe_redirect(redirect), status_code=302)
    _clear_session_cookie(response, runtime.settings)
    return response


@auth_router.get("/status", response_model=AuthStatusResponse, response_model_exclude_none=True)
async def auth_status(request: Request):
    runtime = get_runtime()
    record = await _current_session(runtime, request)
    if record is None:
        return AuthStatusResponse(authenticated=False, login_url=runtime.settings.login_path)
    return AuthStatusResponse(
        authenticated=True,
        user_id=record.user_id,
        is_admin=record.is_admin,
        is_editor=record.is_editor,
        provider=record.provider,
    )


# -- local authorization server -----------------------------------------------


@oauth_router.get("/oauth2/authorize")
@oauth_router.get("/authorize")
async def authorize(request: Request):
    runtime = get_runtime()
    caller = await _current_session(runtime, request)
    return_to = request.url.path
    if request.url.query:
        return_to = f"{return_to}?{request.url.query}"
    outcome = await asyncio.to_thread(
        runtime.authorization_server.authorize,
        dict(request.query_params),
        caller,
        return_to=return_to,
    )
    if outcome.html is not None:
        return HTMLResponse(outcome.html, headers=NO_STORE_HEADERS)
    return RedirectResponse(outcome.location, status_code=302)


@oauth_router.post("/oauth2/token", response_model=TokenResponseBody)
@oauth_router.post("/token", response_model=TokenResponseBody)
async def token(
    request: Request,
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
):
    runtime = get_runtime()
    body = await asyncio.to_thread(
        runtime.authorization_server.token,
        grant_type,
        code,
        redirect_uri,
        code_verifier,
        client_id,
        ip_addr=client_ip(request),
        user_agent=user_agent(request),
    )
    return JSONResponse(
        content=TokenResponseBody(**body).model_dump(), headers=NO_STORE_HEADERS
    )


@oauth_router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata():
    runtime = get_runtime()
    return runtime.authorization_server.metadata(runtime.settings.issuer_url)


# -- protected resource ---------------------------------------------------------


def protected_resource(settings: Settings) -> str:
    """RFC 8707 identifier that bearer tokens must name to reach ``/mcp``."""
    return f"{settings.issuer_url.rstrip('/')}{MCP_PREFIX}"


def bearer_challenge(error: str, description: str, realm: str = "authcore") -> dict:
    return {
        "WWW-Authenticate": (
            f'Bearer realm="{realm}", error="{error}", error_description="{description}"'
        )
    }


async def require_bearer_session(request: Request) -> SessionRecord:
    runtime = get_runtime()
    token = session_token(request, runtime.settings)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="bearer token required",
            headers=bearer_challenge("invalid_token", "Bearer token required"),
        )
    resource = None
    if request.url.path.startswith(MCP_PREFIX):
        resource = protected_resource(runtime.settings)
    try:
        return await runtime.auth.validate_session_with_resource(
            token, client_ip(request), user_agent(request), resource
        )
    except SessionError as exc:
        logger.info("bearer_session_rejected", path=request.url.path, reason=exc.error_code)
        if isinstance(exc, InvalidSession):
            description = "Token is not valid for this resource"
        else:
            description = "Session not found or expired"
        raise HTTPException(
            status_code=401,
            detail=description,
            headers=bearer_challenge("invalid_token", description),
        )


async def require_admin(
    session: SessionRecord = Depends(require_bearer_session),
) -> SessionRecord:
    if not session.is_admin:
        raise HTTPException(
            status_code=403,
            detail="administrator role required",
            headers=bearer_challenge("insufficient_scope", "Administrator role required"),
        )
    return session


@mcp_router.get("/session", response_model=Envelope)
async def bearer_session_info(session: SessionRecord = Depends(require_bearer_session)):
    return Envelope(
        status="ok",
        data=SessionInfoResponse(
            user_id=session.user_id,
            provider=session.provider,
            is_admin=session.is_admin,
            is_editor=session.is_editor,
            audience=session.audience,
            expires_at=session.expires_at,
        ),
    )


@mcp_router.get("/users", response_model=Envelope)
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    session: SessionRecord = Depends(require_admin),
):
    runtime = get_runtime()
    users = await asyncio.to_thread(runtime.store.list_users, limit)
    return Envelope(
        status="ok",
        data=[
            UserSummary(
                id=user.id,
                email=user.email,
                name=user.name,
                provider=user.provider,
                is_admin=user.is_admin,
                is_editor=user.is_editor,
            )
            for user in users
        ],
    )
