"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

This is the transport boundary. Everything the auth core needs from an HTTP
request is extracted here exactly once:

  caller_context()  -- CallerContext(ip, user_agent) for rate limiting,
                       login history and refresh-token device info. The IP
                       is the socket peer unless TRUST_FORWARDED_FOR is set.
  access_token_from_request() -- JWT from the "access_token" cookie or the
                       Authorization: Bearer header, in that order.

get_current_account() resolves the token through SessionIssuer.resolve(),
which renews an expired token when it carries a valid refresh reference.
A renewed token is written back as the cookie on the outgoing response, so
the browser never sees the expiry.

Layer rule: may import from fastapi (Depends/HTTPException/Request/Response)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, Response

from auth.errors import RenewalFailed
from auth.models import Account, CallerContext
from auth.session import SessionIssuer
from auth.tokens import set_auth_cookie
from core.config import get_settings


def caller_context(request: Request, trust_forwarded_for: bool | None = None) -> CallerContext:
    """Build the caller identity from the socket peer, or forwarding headers
    when the deployment sits behind a trusted proxy.

    X-Forwarded-For may hold a chain "client, proxy1, proxy2"; the first hop
    is the client. Those headers are attacker-controlled unless a proxy
    overwrites them, so they are ignored unless TRUST_FORWARDED_FOR is set.
    """
    if trust_forwarded_for is None:
        trust_forwarded_for = get_settings().trust_forwarded_for
    ip = ""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
        if not ip:
            ip = request.headers.get("x-real-ip", "").strip()
    if not ip and request.client:
        ip = request.client.host
    user_agent = request.headers.get("user-agent", "").strip()
    return CallerContext(ip=ip or "unknown", user_agent=user_agent[:512] or "unknown")


def access_token_from_request(request: Request) -> str | None:
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def get_current_account(request: Request, response: Response) -> Account:
    """Require an authenticated session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    token = access_token_from_request(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    issuer: SessionIssuer = request.app.state.session_issuer
    try:
        state = issuer.resolve(token)
    except RenewalFailed as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": exc.error_code, "message": exc.message},
        ) from exc
    if state.renewed:
        set_auth_cookie(response, state.access_token, get_settings().refresh_token_expire_seconds)
    request.state.access_token = state.access_token
    return state.account
