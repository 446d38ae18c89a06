"""
auth/password_policy.py -- Password strength rules for local signup.

validate_password() never raises; it returns a PasswordValidationResult the
signup path turns into WeakPassword. Scoring:

  +1 per satisfied requirement (length, upper, lower, digit, special)
  +0.5 at 12+ chars, +0.5 more at 16+ chars
  -0.5 for a character repeated 3+ times in a row
  -0.5 for a common keyboard/alphabet run (123, abc, qwe, asd, zxc)

The score is clamped to 0-5 and mapped to a strength label.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_REPEATED = re.compile(r"(.)\1{2,}")
_COMMON_RUNS = re.compile(r"123|abc|qwe|asd|zxc", re.IGNORECASE)

# bcrypt rejects (5.x) or ignores (4.x) anything past this many bytes.
MAX_PASSWORD_BYTES = 72


@dataclass(frozen=True)
class PasswordRequirements:
    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True
    special_chars: str = "!@#$%^&*()_+-=[]{}|;:,.<>?"


DEFAULT_REQUIREMENTS = PasswordRequirements()


@dataclass
class PasswordValidationResult:
    is_valid: bool
    score: float
    strength: str  # "very-weak", "weak", "fair", "good", "strong"
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def validate_password(
    password: str,
    requirements: PasswordRequirements = DEFAULT_REQUIREMENTS,
) -> PasswordValidationResult:
    errors: list[str] = []
    warnings: list[str] = []
    score = 0.0

    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        errors.append(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long")

    if len(password) < requirements.min_length:
        errors.append(f"Password must be at least {requirements.min_length} characters long")
    else:
        score += 1

    if requirements.require_uppercase:
        if re.search(r"[A-Z]", password):
            score += 1
        else:
            errors.append("Password must contain at least one uppercase letter")

    if requirements.require_lowercase:
        if re.search(r"[a-z]", password):
            score += 1
        else:
            errors.append("Password must contain at least one lowercase letter")

    if requirements.require_numbers:
        if re.search(r"\d", password):
            score += 1
        else:
            errors.append("Password must contain at least one number")

    if requirements.require_special_chars:
        if any(ch in password for ch in requirements.special_chars):
            score += 1
        else:
            errors.append(f"Password must contain at least one special character ({requirements.special_chars})")

    if len(password) >= 12:
        score += 0.5
    if len(password) >= 16:
        score += 0.5
    if _REPEATED.search(password):
        warnings.append("Avoid repeating characters")
        score -= 0.5
    if _COMMON_RUNS.search(password):
        warnings.append("Avoid common patterns")
        score -= 0.5

    return PasswordValidationResult(
        is_valid=not errors,
        score=max(0.0, min(5.0, score)),
        strength=_strength_label(score),
        errors=errors,
        warnings=warnings,
    )


def _strength_label(score: float) -> str:
    if score < 2:
        return "very-weak"
    if score < 3:
        return "weak"
    if score < 4:
        return "fair"
    if score < 5:
        return "good"
    return "strong"
