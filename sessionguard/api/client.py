from __future__ import annotations

from typing import Any, Callable, Optional, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from sessionguard.api.schemas import (
    BackendUser,
    ErrorEnvelope,
    LoginRequest,
    ResendOtpRequest,
    ResendResponse,
    TokenResponse,
    TwoFactorChallengeResponse,
    VerifyOtpRequest,
    unwrap_data,
)
from sessionguard.logging import get_logger, redact_email, set_correlation_id
from sessionguard.service.errors import (
    ApiError,
    RateLimitedError,
    RefreshError,
    ResendError,
    TransportError,
    ValidationError,
    VerificationError,
    safe_error_message,
)
from sessionguard.service.rate_limit import RateLimiter
from sessionguard.service.tokens import TokenManager

logger = get_logger(__name__)

LOGIN_PATH = "/api/v1/auth/login"
VERIFY_OTP_PATH = "/api/v1/auth/verify-otp"
RESEND_OTP_PATH = "/api/v1/auth/resend-otp"
REFRESH_PATH = "/api/v1/auth/refresh"
LOGOUT_PATH = "/api/v1/auth/logout"
ME_PATH = "/api/v1/auth/me"

CSRF_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})
INVALID_OTP_MESSAGE = "Invalid or expired OTP"
MALFORMED_OTP_MESSAGE = "Verification code must contain only digits"
MALFORMED_LOGIN_MESSAGE = "Please enter a valid email and password"


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        return None


class IdentityClient:
    """HTTP client for the identity provider's auth endpoints.

    Every call except token refresh and logout is gated by the shared rate
    limiter before any I/O happens. The refresh cookie lives in the client's
    cookie jar, so one instance must be reused for the life of the session.

    Authenticated calls refresh an expired access token before sending and
    retry once with a fresh token after a 401, when a token manager is given.
    """

    def __init__(
        self,
        *,
        base_url: str,
        rate_limiter: RateLimiter,
        timeout: float = 10.0,
        development: bool = False,
        tokens: TokenManager | None = None,
        access_token_getter: Callable[[], Optional[str]] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self.development = development
        self.tokens = tokens
        if access_token_getter is None and tokens is not None:
            access_token_getter = tokens.get_access_token
        self.access_token_getter = access_token_getter
        self.csrf_token: Optional[str] = None
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[dict] = None,
        requires_auth: bool = False,
        rate_limited: bool = True,
        skip_refresh: bool = False,
    ) -> Any:
        if rate_limited:
            decision = self.rate_limiter.check_rate_limit(path)
            if not decision.allowed:
                raise RateLimitedError(
                    f"Too many attempts. Try again in {decision.retry_after_seconds} seconds.",
                    retry_after_seconds=decision.retry_after_seconds,
                )

        request_id = set_correlation_id()
        headers = {"X-Request-ID": request_id}
        if method.upper() in CSRF_METHODS and self.csrf_token:
            headers["X-CSRF-Token"] = self.csrf_token
        can_refresh = requires_auth and not skip_refresh and self.tokens is not None
        if requires_auth and self.access_token_getter is not None:
            token = self.access_token_getter()
            if token and can_refresh and self.tokens.is_token_expired():
                token = await self.tokens.get_fresh_access_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"

        response = await self._send(method, path, body, headers)
        if response.status_code == 401 and can_refresh:
            response = await self._retry_with_fresh_token(method, path, body, headers)

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            message = (
                f"Rate limited. Try again in {retry_after} seconds."
                if retry_after is not None
                else "Too many requests. Please slow down."
            )
            logger.warning("identity_rate_limited", path=path, retry_after=retry_after)
            raise RateLimitedError(message, retry_after_seconds=retry_after)

        if response.is_error:
            envelope = self._error_envelope(response)
            logger.info(
                "identity_request_rejected",
                path=path,
                status=response.status_code,
                error_code=envelope.code,
            )
            raise ApiError(
                safe_error_message(
                    response.status_code, envelope.text, development=self.development
                ),
                status_code=response.status_code,
                error_code=envelope.code,
            )

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return unwrap_data(response.json())
        except ValueError as exc:
            raise ApiError("Malformed response from identity provider") from exc

    async def _send(
        self, method: str, path: str, body: Optional[dict], headers: dict
    ) -> httpx.Response:
        try:
            return await self._client.request(method, path, json=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.error(
                "identity_request_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TransportError(safe_error_message(503)) from exc

    async def _retry_with_fresh_token(
        self, method: str, path: str, body: Optional[dict], headers: dict
    ) -> httpx.Response:
        """Refresh once after a 401 and replay the request with the new token."""
        logger.info("identity_unauthorized_retry", path=path)
        token = await self.tokens.get_fresh_access_token()
        headers["Authorization"] = f"Bearer {token}"
        response = await self._send(method, path, body, headers)
        if response.status_code == 401:
            self.tokens.clear_tokens()
        return response

    @staticmethod
    def _error_envelope(response: httpx.Response) -> ErrorEnvelope:
        try:
            payload = response.json()
        except ValueError:
            return ErrorEnvelope()
        if not isinstance(payload, dict):
            return ErrorEnvelope()
        try:
            return ErrorEnvelope.model_validate(payload)
        except PydanticValidationError:
            return ErrorEnvelope()

    def _remember_csrf(self, tokens: TokenResponse) -> None:
        if tokens.csrf_token:
            self.csrf_token = tokens.csrf_token

    async def login(
        self, email: str, password: str, active_role: Optional[str] = None
    ) -> Union[TokenResponse, TwoFactorChallengeResponse]:
        try:
            request = LoginRequest(email=email, password=password, active_role=active_role)
        except PydanticValidationError as exc:
            raise ValidationError(MALFORMED_LOGIN_MESSAGE) from exc
        payload = await self._request(
            "POST", LOGIN_PATH, body=request.model_dump(exclude_none=True)
        )
        try:
            if isinstance(payload, dict) and payload.get("requires_2fa"):
                challenge = TwoFactorChallengeResponse.model_validate(payload)
                logger.info("login_requires_2fa", email=redact_email(challenge.email))
                return challenge
            tokens = TokenResponse.model_validate(payload)
        except PydanticValidationError as exc:
            raise ApiError("Malformed login response") from exc
        self._remember_csrf(tokens)
        return tokens

    async def verify_otp(self, session_token: str, code: str) -> TokenResponse:
        try:
            request = VerifyOtpRequest(session_token=session_token, otp_code=code)
        except PydanticValidationError as exc:
            raise ValidationError(MALFORMED_OTP_MESSAGE) from exc
        try:
            payload = await self._request(
                "POST", VERIFY_OTP_PATH, body=request.model_dump()
            )
        except (RateLimitedError, TransportError):
            raise
        except ApiError as exc:
            message = INVALID_OTP_MESSAGE if exc.status_code == 401 else exc.message
            raise VerificationError(message, status_code=exc.status_code) from exc
        try:
            tokens = TokenResponse.model_validate(payload)
        except PydanticValidationError as exc:
            raise ApiError("Malformed verification response") from exc
        self._remember_csrf(tokens)
        return tokens

    async def resend_otp(self, session_token: str) -> ResendResponse:
        request = ResendOtpRequest(session_token=session_token)
        try:
            payload = await self._request("POST", RESEND_OTP_PATH, body=request.model_dump())
        except RateLimitedError as exc:
            raise ResendError(exc.message, status_code=429) from exc
        except TransportError:
            raise
        except ApiError as exc:
            raise ResendError(exc.message, status_code=exc.status_code) from exc
        return ResendResponse.model_validate(payload if isinstance(payload, dict) else {})

    async def refresh(self) -> TokenResponse:
        # The refresh token travels as an HttpOnly cookie, never in the body
        try:
            payload = await self._request("POST", REFRESH_PATH, rate_limited=False)
        except TransportError:
            raise
        except ApiError as exc:
            raise RefreshError("Token refresh failed", status_code=exc.status_code) from exc
        try:
            tokens = TokenResponse.model_validate(payload)
        except PydanticValidationError as exc:
            raise RefreshError("Token refresh failed") from exc
        self._remember_csrf(tokens)
        return tokens

    async def logout(self) -> None:
        await self._request(
            "POST", LOGOUT_PATH, requires_auth=True, rate_limited=False, skip_refresh=True
        )
        self.csrf_token = None

    async def me(self) -> BackendUser:
        """Current user for the held access token, refreshing it if needed."""
        payload = await self._request("GET", ME_PATH, requires_auth=True)
        if isinstance(payload, dict) and isinstance(payload.get("user"), dict):
            payload = payload["user"]
        try:
            return BackendUser.model_validate(payload)
        except PydanticValidationError as exc:
            raise ApiError("Malformed user response") from exc
