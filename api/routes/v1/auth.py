"""
api/routes/v1/auth.py -- Sign-in, session renewal and account session endpoints.

Routes:
  POST /api/v1/auth/login                    -- password login; sets JWT cookie
  POST /api/v1/auth/signup                   -- create a local account
  POST /api/v1/auth/refresh                  -- refresh token -> new access token
  POST /api/v1/auth/renew                    -- renew an access token (body or cookie)
  POST /api/v1/auth/logout                   -- revoke one or all refresh tokens; clears cookie
  GET  /api/v1/auth/me                       -- current account (requires auth)
  GET  /api/v1/auth/sessions                 -- active refresh-token devices (requires auth)
  GET  /api/v1/auth/login-attempts           -- recent login history (requires auth)
  GET  /api/v1/auth/providers                -- enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}/login   -- start the provider redirect
  GET  /api/v1/auth/oauth/{provider}/callback -- finish it; sets JWT cookie

Every route delegates to the SessionIssuer on app.state. AuthError subclasses
raised from it are rendered by the handler in api/main.py, so the handlers
here only deal with the success path.

Security:
  [H2] Login brute force is bounded by SessionIssuer's per-IP RateLimiter
       (5 per 15 minutes by default), not by a slowapi decorator.
  [C1] Unknown email and wrong password are indistinguishable, in body and
       in timing. SessionIssuer.authenticate() owns this -- never inline the
       lookup + bcrypt check in a route.
  [M5] Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.models import (
    AccountResponse,
    LoginAttemptResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    OAuthProviderInfo,
    RefreshRequest,
    RenewRequest,
    RenewResponse,
    SessionDeviceResponse,
    SignupRequest,
)
from auth.dependencies import access_token_from_request, caller_context, get_current_account
from auth.errors import RenewalFailed
from auth.models import Account, IssuedSession
from auth.oauth import get_enabled_providers, get_oauth_user_info
from auth.session import SessionIssuer
from auth.tokens import decode_access_token, set_auth_cookie
from core.config import get_settings

logger = logging.getLogger("invoicer.api.auth")

# Auth policy:
# - POST /auth/login, /auth/signup, /auth/refresh, /auth/renew: public
# - GET  /auth/providers, /auth/oauth/*:                        public
# - POST /auth/logout:                      requires auth (get_current_account)
# - GET  /auth/me, /auth/sessions, /auth/login-attempts: requires auth
router = APIRouter()


def _issuer(request: Request) -> SessionIssuer:
    return request.app.state.session_issuer


def _session_response(session: IssuedSession) -> JSONResponse:
    """Render an IssuedSession as JSON and set the matching auth cookie.

    A session with a refresh token gets a cookie that outlives the access
    token so the browser keeps presenting it for silent renewal.
    """
    settings = get_settings()
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=session.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=settings.access_token_expire_seconds,
            expires_at=session.expires_at,
            refresh_token=session.refresh_token,
            account=AccountResponse.from_account(session.account),
        ).model_dump(mode="json"),
    )
    cookie_seconds = settings.refresh_token_expire_seconds if session.refresh_token else 0
    set_auth_cookie(resp, session.access_token, cookie_seconds)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    remember_me=true additionally issues a refresh token, returned once in
    the body and referenced from inside the access token.
    """
    session = _issuer(request).authenticate(
        body.email,
        body.password,
        body.remember_me,
        caller_context(request),
    )
    return _session_response(session)


@router.post("/auth/signup", response_model=AccountResponse, status_code=201)
def signup(request: Request, body: SignupRequest) -> AccountResponse:
    """Create a local account. Does not sign the caller in."""
    if not get_settings().self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    account = _issuer(request).sign_up(body.email, body.name, body.password)
    return AccountResponse.from_account(account)


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a raw refresh token for a fresh access token."""
    session = _issuer(request).refresh(body.refresh_token)
    return _session_response(session)


@router.post("/auth/renew", response_model=RenewResponse)
def renew(request: Request, body: RenewRequest | None = None) -> JSONResponse:
    """Return a usable access token for the presented one.

    Unexpired tokens come back unchanged (renewed=false). Expired tokens are
    renewed through their refresh reference or rejected with 401.
    """
    token = (body.access_token if body else None) or access_token_from_request(request)
    if not token:
        raise RenewalFailed("No session token presented.")
    new_token = _issuer(request).renew_session(token)
    renewed = new_token != token
    resp = JSONResponse(
        status_code=200,
        content=RenewResponse(access_token=new_token, renewed=renewed).model_dump(),
    )
    if renewed:
        set_auth_cookie(resp, new_token, get_settings().refresh_token_expire_seconds)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the list of configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no OAuth env vars are set.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


# ---------------------------------------------------------------------------
# External identity (authlib)
# ---------------------------------------------------------------------------


def _oauth_client(request: Request, provider: str):
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": f"OAuth provider {provider!r} is not configured."},
        )
    return client


@router.get("/auth/oauth/{provider}/login")
async def oauth_login(request: Request, provider: str):
    """Redirect to the provider's consent page. authlib stores state in the session."""
    client = _oauth_client(request, provider)
    redirect_uri = request.url_for("oauth_callback", provider=provider)
    return await client.authorize_redirect(request, str(redirect_uri))


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Complete the provider flow and sign the verified identity in.

    External sign-ins get an access token only; they never pass through the
    password path, so no lockout accounting applies.
    """
    client = _oauth_client(request, provider)
    try:
        token = await client.authorize_access_token(request)
        identity = get_oauth_user_info(provider, token)
    except (OAuthError, ValueError) as exc:
        logger.warning("OAuth sign-in via %s rejected: %s", provider, exc)
        raise HTTPException(
            status_code=401,
            detail={"code": "oauth_failed", "message": "External sign-in failed."},
        ) from exc

    issuer = _issuer(request)
    account = issuer.sign_in_external(identity.email, identity.name, identity.avatar_url)
    session = issuer.issue_for_account(account, False, caller_context(request))
    logger.info("Account %s signed in via %s", account.id, provider)

    resp = RedirectResponse("/", status_code=302)
    set_auth_cookie(resp, session.access_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    body: LogoutRequest | None = None,
    current_account: Account = Depends(get_current_account),
) -> JSONResponse:
    """Revoke refresh tokens and clear the cookie.

    The access token itself stays valid until it expires; only its renewal
    path is cut.
    """
    body = body or LogoutRequest()
    refresh_token = body.refresh_token
    if refresh_token is None and not body.all_devices:
        payload = decode_access_token(request.state.access_token, verify_exp=False)
        refresh_token = payload.get("rt") if payload else None
    revoked = _issuer(request).logout(current_account.id, refresh_token, all_devices=body.all_devices)
    resp = JSONResponse(content=LogoutResponse(revoked=revoked).model_dump())
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/me", response_model=AccountResponse)
async def me(current_account: Account = Depends(get_current_account)) -> AccountResponse:
    """Return identity information for the currently authenticated account."""
    return AccountResponse.from_account(current_account)


@router.get("/auth/sessions", response_model=list[SessionDeviceResponse])
def list_sessions(
    request: Request,
    current_account: Account = Depends(get_current_account),
) -> list[SessionDeviceResponse]:
    """List devices holding an unexpired refresh token. Raw tokens are never returned."""
    records = _issuer(request).refresh_tokens.list_active(current_account.id)
    return [SessionDeviceResponse.from_record(r) for r in records]


@router.get("/auth/login-attempts", response_model=list[LoginAttemptResponse])
def list_login_attempts(
    request: Request,
    current_account: Account = Depends(get_current_account),
) -> list[LoginAttemptResponse]:
    """Return the most recent login attempts for the current account, newest first."""
    events = _issuer(request).store.get_login_attempts(current_account.id)
    return [LoginAttemptResponse.from_event(e) for e in events]
