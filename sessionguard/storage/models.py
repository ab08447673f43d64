from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


@dataclass
class AuthUser:
    id: str
    email: str
    role: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "first_name": self.first_name,
            "last_name": self.last_name,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AuthUser":
        return cls(
            id=data["id"],
            email=data["email"],
            role=data.get("role") or "",
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
        )


@dataclass
class TwoFactorPendingSession:
    """Outstanding 2FA challenge: primary credentials accepted, code not yet verified."""

    email: str
    session_token: str
    pending_since: datetime = field(default_factory=datetime.utcnow)
    expires_at: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "email": self.email,
            "session_token": self.session_token,
            "pending_since": self.pending_since.isoformat(),
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "TwoFactorPendingSession":
        pending_since = data.get("pending_since")
        return cls(
            email=data["email"],
            session_token=data["session_token"],
            pending_since=(
                datetime.fromisoformat(pending_since)
                if pending_since
                else datetime.utcnow()
            ),
            expires_at=data.get("expires_at"),
        )


@dataclass
class LoginResult:
    requires_two_factor: bool
    email: Optional[str] = None
    two_factor: Optional[TwoFactorPendingSession] = None
    user: Optional[AuthUser] = None


@dataclass
class OtpEntryState:
    digits: List[str]
    resend_cooldown_seconds: int = 0
    is_submitting: bool = False
    is_resending: bool = False
    focused_index: int = 0

    @classmethod
    def blank(cls, length: int = 6) -> "OtpEntryState":
        return cls(digits=[""] * length)

    @property
    def code(self) -> str:
        return "".join(self.digits)

    @property
    def is_complete(self) -> bool:
        return all(digit != "" for digit in self.digits)


@dataclass
class TokenExpiry:
    expires_at_epoch_ms: Optional[int] = None
    warning_already_shown: bool = False


@dataclass
class RateLimitWindow:
    count: int
    reset_at_epoch_ms: int


class PasswordStrength(str, Enum):
    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"


@dataclass
class PasswordAssessment:
    is_valid: bool
    errors: List[str]
    strength: PasswordStrength
    score: int

    def to_dict(self) -> Dict:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "strength": self.strength.value,
            "score": self.score,
        }
