"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered.

This module owns the provider protocol. What comes out of it is a verified
identity (email, name, avatar) that SessionIssuer.sign_in_external() maps to
an Account -- the auth core trusts the provider's verification and never
re-checks a password for these accounts.

Security notes:
  [H1] Email verification is mandatory. get_oauth_user_info() raises ValueError
       if the provider does not confirm the email is verified. An unverified
       email could belong to someone who typed a victim's address, and
       sign_in_external() matches accounts by email.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware.

Supported providers:
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from authlib.integrations.starlette_client import OAuth

from core.config import get_settings

logger = logging.getLogger("invoicer.auth.oauth")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")


@dataclass(frozen=True)
class ExternalIdentity:
    """A provider-verified identity, ready for SessionIssuer.sign_in_external()."""

    email: str
    name: str | None = None
    avatar_url: str | None = None


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers() -> list[dict]:
    """Return metadata for every configured OAuth provider.

    Returns list of {"name": str, "label": str} dicts.
    """
    cfg = get_settings()
    providers: list[dict] = []
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    return providers


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


def get_oauth_user_info(provider: str, token: dict) -> ExternalIdentity:
    """Extract a verified identity from a provider token response.

    Raises:
        ValueError: unknown provider, or a verified email cannot be confirmed.
    """
    if provider == "google":
        return _get_oidc_user_info(token, provider)
    raise ValueError(f"Unknown OAuth provider: {provider!r}")


def _get_oidc_user_info(token: dict, provider: str) -> ExternalIdentity:
    """Extract the identity from an OIDC id_token's userinfo claims.

    [H1] The email claim is only accepted when email_verified is True.
    Providers that omit email_verified are treated as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    if not email:
        raise ValueError(f"{provider} OAuth: missing email claim in userinfo")

    return ExternalIdentity(
        email=email,
        name=userinfo.get("name"),
        avatar_url=userinfo.get("picture"),
    )
