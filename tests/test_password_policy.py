"""Unit tests for auth/password_policy.py.

Covers:
- Each missing character class produces its own error
- Short passwords fail the length rule
- Length bonuses and pattern penalties move the score
- Custom requirements relax individual rules
- Passwords over 72 UTF-8 bytes are rejected
"""

from auth.password_policy import PasswordRequirements, validate_password


def test_strong_password_is_valid():
    result = validate_password("Corr3ct-Horse!")
    assert result.is_valid
    assert result.errors == []
    assert result.strength == "strong"


def test_each_missing_class_is_reported():
    result = validate_password("aaaaaaaaaa")
    assert not result.is_valid
    joined = " ".join(result.errors)
    assert "uppercase" in joined
    assert "number" in joined
    assert "special character" in joined
    assert "lowercase" not in joined


def test_short_password_fails_length_rule():
    result = validate_password("Ab1!")
    assert not result.is_valid
    assert any("at least 8 characters" in e for e in result.errors)


def test_common_pattern_and_repeats_are_warnings_not_errors():
    result = validate_password("Abc111!xyz")
    assert result.is_valid
    assert "Avoid repeating characters" in result.warnings
    assert "Avoid common patterns" in result.warnings
    assert result.score == 4.0


def test_length_bonus_caps_at_five():
    result = validate_password("Vx7!kmPq2@Lw9#Rt")
    assert result.score == 5.0


def test_custom_requirements_relax_rules():
    relaxed = PasswordRequirements(min_length=4, require_special_chars=False, require_uppercase=False)
    assert validate_password("pa55", relaxed).is_valid


def test_password_over_bcrypt_byte_limit_fails():
    result = validate_password("Aa1!" + "x" * 80)
    assert not result.is_valid
    assert any("at most 72 bytes" in e for e in result.errors)


def test_byte_limit_counts_utf8_bytes_not_characters():
    # 40 characters, 76 bytes once encoded
    result = validate_password("Aa1!" + "é" * 36)
    assert any("at most 72 bytes" in e for e in result.errors)
    assert validate_password("Aa1!" + "é" * 34).errors == []
