"""Client-side password strength scoring.

Guidance only: the identity provider enforces its own policy on submit.
"""

from __future__ import annotations

import re

from sessionguard.storage.models import PasswordAssessment, PasswordStrength

COMMON_PASSWORDS = (
    "password",
    "password123",
    "123456",
    "12345678",
    "qwerty",
    "abc123",
    "monkey",
    "master",
    "dragon",
    "admin",
    "letmein",
)

SPECIAL_CHARACTERS = "!@#$%^&*(),.?\":{}|<>_-+=[]\\/`~"

MIN_LENGTH = 8
LONG_LENGTH = 12

TOO_SHORT = "Password must be at least 8 characters"
MISSING_UPPERCASE = "Password must contain at least one uppercase letter"
MISSING_LOWERCASE = "Password must contain at least one lowercase letter"
MISSING_NUMBER = "Password must contain at least one number"
MISSING_SPECIAL = "Password must contain at least one special character"
TOO_COMMON = "Password is too common"
REPEATED_CHARACTERS = "Password should not contain repeated characters"

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"[0-9]")
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")
_REPEAT_RE = re.compile(r"(.)\1{2,}", re.DOTALL)


def strength_for_score(score: int) -> PasswordStrength:
    if score >= 80:
        return PasswordStrength.STRONG
    if score >= 50:
        return PasswordStrength.MEDIUM
    return PasswordStrength.WEAK


def validate_password(password: str) -> PasswordAssessment:
    errors: list[str] = []
    score = 0

    if len(password) < MIN_LENGTH:
        errors.append(TOO_SHORT)
    elif len(password) >= LONG_LENGTH:
        score += 25
    else:
        score += 15

    if _UPPER_RE.search(password):
        score += 20
    else:
        errors.append(MISSING_UPPERCASE)

    if _LOWER_RE.search(password):
        score += 20
    else:
        errors.append(MISSING_LOWERCASE)

    if _DIGIT_RE.search(password):
        score += 15
    else:
        errors.append(MISSING_NUMBER)

    if _SPECIAL_RE.search(password):
        score += 20
    else:
        errors.append(MISSING_SPECIAL)

    lowered = password.lower()
    if any(common in lowered for common in COMMON_PASSWORDS):
        errors.append(TOO_COMMON)
        score = max(0, score - 30)

    if _REPEAT_RE.search(password):
        errors.append(REPEATED_CHARACTERS)
        score = max(0, score - 10)

    score = max(0, min(100, score))
    return PasswordAssessment(
        is_valid=not errors,
        errors=errors,
        strength=strength_for_score(score),
        score=score,
    )
