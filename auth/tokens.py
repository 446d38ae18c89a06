"""
auth/tokens.py -- JWT, password hashing, and refresh-token utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY and
       carry account_id, email, an optional refresh-token reference ("rt"),
       iat and exp. decode_access_token() returns None on any failure --
       callers turn that into RenewalFailed / 401.

  Passwords: bcrypt used directly. bcrypt.checkpw is constant-time and its
       cost factor makes brute-force expensive. The _DUMMY_HASH constant
       enables timing equalization so response time does not reveal whether
       an email exists or has a local password [C1].

  Refresh tokens: secrets.token_hex(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw_token) so lookup is O(1) and a leaked DB
       cannot be replayed. bcrypt's intentional slowness is unnecessary here.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.password_policy import MAX_PASSWORD_BYTES
from core.config import get_settings

logger = logging.getLogger("invoicer.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords over MAX_PASSWORD_BYTES; sign_up rejects
    those through the password policy before hashing.
    """
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password exceeds {MAX_PASSWORD_BYTES} bytes")
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Accounts without a password hash (external identity only) always fail.
    The dummy hash is still checked so the call costs the same either way.
    """
    if not hashed:
        burn_password_check(plain)
        return False
    candidate = plain.encode("utf-8")
    if len(candidate) > MAX_PASSWORD_BYTES:
        # No stored hash can match; still pay for one comparison.
        burn_password_check(plain)
        return False
    try:
        return bcrypt.checkpw(candidate, hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        logger.warning("Stored password hash could not be parsed")
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("invoicer_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a full bcrypt comparison against the dummy hash and discard the result.

    Called on the unknown-email path so it costs the same as a wrong password.
    Oversized input is cut to MAX_PASSWORD_BYTES so the comparison still runs.
    """
    bcrypt.checkpw(plain.encode("utf-8")[:MAX_PASSWORD_BYTES], _DUMMY_HASH.encode("utf-8"))


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    account_id: int,
    email: str,
    refresh_token: str | None = None,
    now: datetime | None = None,
    expire_seconds: int = 0,
) -> tuple[str, datetime]:
    """Encode a signed JWT and return it with its expiry.

    Args:
        account_id:     Numeric account ID stored in the DB.
        email:          Stored as the JWT subject claim.
        refresh_token:  Optional raw refresh token carried as the "rt" claim.
                        Its presence is what makes silent renewal possible.
        now:            Issue time. Defaults to the current UTC time; the
                        session issuer passes its own clock.
        expire_seconds: Lifetime in seconds. 0 means
                        Settings.access_token_expire_seconds.
    """
    issued_at = now or datetime.now(timezone.utc)
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    expires_at = issued_at + timedelta(seconds=duration)
    payload: dict = {
        "sub": email,
        "account_id": account_id,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if refresh_token:
        payload["rt"] = refresh_token
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM), expires_at


def decode_access_token(token: str, verify_exp: bool = True) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    verify_exp=False still verifies the signature. The session issuer uses it
    so an expired token can be inspected for its refresh reference, and so
    expiry is judged against the issuer's clock rather than the library's.
    """
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            options={"verify_exp": verify_exp},
        )
    except JWTError:
        return None
    if "account_id" not in payload or "exp" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Refresh token generation and hashing
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Generate a new refresh token: 32 random bytes as 64 hex characters (256 bits)."""
    return secrets.token_hex(32)


def hash_refresh_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the digest doubles as the lookup key.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


def token_prefix(raw_token: str) -> str:
    """Short display form for logs and device listings. Never log the full token."""
    return raw_token[:8]


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": CSRF mitigation for cross-site POSTs.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: defaults to the JWT lifetime. Sessions holding a refresh token
        pass the refresh lifetime so the browser keeps the cookie long enough
        for silent renewal.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
