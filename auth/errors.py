"""
auth/errors.py -- Exception taxonomy for the authentication core.

Every class carries a stable error_code and the HTTP status the API layer maps
it to, so api/main.py needs exactly one exception handler for the whole family.
The core itself stays transport-agnostic: status_code is metadata, nothing in
auth/ reads it.

  RateLimited        429  caller exceeded the login attempt ceiling (retryable)
  InvalidCredentials 401  unknown email OR wrong password -- deliberately identical
  AccountLocked      423  lockout in effect; reports remaining minutes
  RenewalFailed      401  refresh token missing/expired/revoked; re-authenticate
  StorageUnavailable 503  persistence failed; fatal for this request, no retry here
  WeakPassword       400  signup password rejected by the password policy
  AccountExists      409  signup email already registered

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for authentication failures surfaced to callers."""

    status_code: int = 400
    error_code: str = "auth_error"

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RateLimited(AuthError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after_seconds: int) -> None:
        minutes = max(1, -(-retry_after_seconds // 60))
        super().__init__(
            f"Too many login attempts. Try again in {minutes} minutes.",
            detail={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class InvalidCredentials(AuthError):
    """Unknown email and wrong password share this single message on purpose.

    Distinct messages would let an attacker enumerate registered emails.
    """

    status_code = 401
    error_code = "bad_credentials"

    def __init__(self) -> None:
        super().__init__("Invalid email or password.")


class AccountLocked(AuthError):
    """Distinguishable from InvalidCredentials: usability over strict enumeration-resistance."""

    status_code = 423
    error_code = "account_locked"

    def __init__(self, remaining_minutes: int) -> None:
        super().__init__(
            "Account is locked due to too many failed attempts. " f"Try again in {remaining_minutes} minutes.",
            detail={"remaining_minutes": remaining_minutes},
        )
        self.remaining_minutes = remaining_minutes


class RenewalFailed(AuthError):
    status_code = 401
    error_code = "session_expired"

    def __init__(self, message: str = "Session expired. Please sign in again.") -> None:
        super().__init__(message)


class StorageUnavailable(AuthError):
    status_code = 503
    error_code = "storage_unavailable"

    def __init__(self, message: str = "Account storage is unavailable.") -> None:
        super().__init__(message)


class WeakPassword(AuthError):
    status_code = 400
    error_code = "weak_password"

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Password does not meet the requirements.", detail={"errors": errors})
        self.errors = errors


class AccountExists(AuthError):
    status_code = 409
    error_code = "conflict"

    def __init__(self) -> None:
        super().__init__("An account with that email already exists.")
