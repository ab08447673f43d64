from __future__ import annotations

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

OTP_CODE_PATTERN = re.compile(r"[0-9]+")


def unwrap_data(payload: Any) -> Any:
    """Accept both bare payloads and ``{"data": ...}`` envelopes."""
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    return payload


class BackendUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = ""
    phone_number: Optional[str] = None

    @field_validator("role")
    @classmethod
    def _normalize_role(cls, value: str) -> str:
        return (value or "").upper()


class TokenResponse(BaseModel):
    """Access token issued by login, OTP verification or refresh."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    expires_in: Optional[int] = None
    csrf_token: Optional[str] = None
    message: Optional[str] = None
    user: Optional[BackendUser] = None


class TwoFactorChallengeResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    requires_2fa: bool = True
    session_token: str
    email: str
    expires_at: Optional[str] = None
    message: Optional[str] = None


class ResendResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    expires_at: Optional[str] = None
    message: Optional[str] = None


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)
    active_role: Optional[str] = None


class VerifyOtpRequest(BaseModel):
    session_token: str = Field(..., min_length=1)
    otp_code: str

    @field_validator("otp_code")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        if not OTP_CODE_PATTERN.fullmatch(value):
            raise ValueError("otp_code must contain only digits")
        return value


class ResendOtpRequest(BaseModel):
    session_token: str = Field(..., min_length=1)


class ErrorEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None

    @property
    def text(self) -> Optional[str]:
        return self.message or self.error
