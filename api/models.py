"""
API request and response models for the Invoicer auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
Raw refresh tokens appear in exactly two responses (login with remember_me and
refresh); everywhere else a token is identified by its 8-char prefix.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Account, LoginAttemptEvent, RefreshTokenRecord
from auth.password_policy import MAX_PASSWORD_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Loose shape check only; the store normalizes case and whitespace.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    # max_length stops oversized payloads; the validator enforces the byte limit.
    password: str = Field(min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("password")
    @classmethod
    def password_within_hash_limit(cls, value: str) -> str:
        return _check_password_bytes(value)


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=320)
    name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)

    @field_validator("password")
    @classmethod
    def password_within_hash_limit(cls, value: str) -> str:
        return _check_password_bytes(value)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1, max_length=256)


class RenewRequest(BaseModel):
    """Request body for POST /api/v1/auth/renew. Falls back to the cookie when empty."""

    access_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(BaseModel):
    """Request body for POST /api/v1/auth/logout.

    With neither field set, the refresh token referenced by the current
    access token (if any) is revoked.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=256)
    all_devices: bool = False


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an Account. Never carries the password hash or lock counters."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    image: Optional[str] = None
    has_password: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            image=account.image,
            has_password=bool(account.password_hash),
            last_login=account.last_login,
            created_at=account.created_at,
        )


class LoginResponse(BaseModel):
    """Response for POST /login and POST /refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: datetime
    refresh_token: Optional[str] = None
    account: AccountResponse


class RenewResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    renewed: bool


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Logged out."
    revoked: int = 0


class SessionDeviceResponse(BaseModel):
    """One active refresh token, identified by prefix only."""

    model_config = ConfigDict(frozen=True)

    token_prefix: str
    device_info: str
    source_ip: str
    created_at: Optional[datetime] = None
    expires_at: datetime

    @classmethod
    def from_record(cls, record: RefreshTokenRecord) -> "SessionDeviceResponse":
        return cls(
            token_prefix=record.token_prefix,
            device_info=record.device_info,
            source_ip=record.source_ip,
            created_at=record.created_at,
            expires_at=record.expires_at,
        )


class LoginAttemptResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    succeeded: bool
    source_ip: str
    device_info: str

    @classmethod
    def from_event(cls, event: LoginAttemptEvent) -> "LoginAttemptResponse":
        return cls(
            timestamp=event.timestamp,
            succeeded=event.succeeded,
            source_ip=event.source_ip,
            device_info=event.device_info,
        )


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
