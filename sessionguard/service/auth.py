from __future__ import annotations

from typing import Any, Callable, List, Optional

from sessionguard.api.client import IdentityClient
from sessionguard.api.schemas import BackendUser, TokenResponse, TwoFactorChallengeResponse
from sessionguard.logging import get_logger, redact_email
from sessionguard.service.errors import (
    NoPendingSessionError,
    SessionGuardError,
)
from sessionguard.service.tokens import TokenManager
from sessionguard.storage.memory import PersistentSessionStore
from sessionguard.storage.models import AuthUser, LoginResult, TwoFactorPendingSession

logger = get_logger(__name__)

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please log in again."
LOGIN_PATH = "/auth/login"

ROLE_HOME_ROUTES = {
    "STUDENT": "/student",
    "PARENT": "/parent",
    "TEACHER": "/teacher",
    "TEACHER_ADMIN": "/teacher",
    "SCHOOL_ADMIN": "/school",
    "MINISTRY_OFFICIAL": "/school",
    "SUPER_ADMIN": "/school",
}

# Keys written to the persistent store; everything else is per page load.
PERSISTED_FIELDS = ("user", "is_authenticated", "session_error", "two_factor_pending")

StateListener = Callable[["AuthSessionStore"], None]


def role_home_route(role: Optional[str]) -> str:
    """Landing page for a role, or the login page for unknown roles."""
    return ROLE_HOME_ROUTES.get((role or "").upper(), LOGIN_PATH)


def _map_user(user: Optional[BackendUser]) -> Optional[AuthUser]:
    if user is None:
        return None
    return AuthUser(
        id=user.id,
        email=user.email,
        role=user.role,
        first_name=user.first_name,
        last_name=user.last_name,
    )


class AuthSessionStore:
    """Client-held authentication state.

    Owns the pending-2FA flag, the shared error slot and the authenticated
    user. A subset of the state survives reloads through the persistent
    store; until that store has hydrated, the persisted fields hold their
    defaults and must not drive navigation decisions.
    """

    def __init__(
        self,
        *,
        client: IdentityClient,
        tokens: TokenManager,
        storage: PersistentSessionStore,
    ) -> None:
        self.client = client
        self.tokens = tokens
        self.storage = storage
        self.user: Optional[AuthUser] = None
        self.is_authenticated = False
        self.is_loading = False
        self.error: Optional[str] = None
        self.session_error: Optional[str] = None
        self.two_factor_pending: Optional[TwoFactorPendingSession] = None
        self._hydrated = False
        self._listeners: List[StateListener] = []
        self._hydration_listeners: List[Callable[[], None]] = []

        self.tokens.set_session_expired_handler(self.handle_session_expiry)
        if storage.has_hydrated():
            self._restore()
        else:
            storage.on_hydration_finished(self._restore)

    # ------------------------------------------------------------------
    # Hydration
    # ------------------------------------------------------------------
    def _restore(self) -> None:
        user = self.storage.get_optional_dict("user")
        pending = self.storage.get_optional_dict("two_factor_pending")
        try:
            self.user = AuthUser.from_dict(user) if user else None
            self.two_factor_pending = (
                TwoFactorPendingSession.from_dict(pending) if pending else None
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("auth_state_restore_failed", error=str(exc))
            self.user = None
            self.two_factor_pending = None
        self.is_authenticated = bool(self.storage.get("is_authenticated", False))
        self.session_error = self.storage.get("session_error")
        self._hydrated = True
        logger.debug(
            "auth_state_restored",
            is_authenticated=self.is_authenticated,
            two_factor_pending=self.two_factor_pending is not None,
        )
        listeners = list(self._hydration_listeners)
        self._hydration_listeners.clear()
        for listener in listeners:
            listener()
        self._notify()

    def has_hydrated(self) -> bool:
        return self._hydrated

    def on_hydration_finished(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a one-time callback fired after persisted state is restored."""
        self._hydration_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._hydration_listeners:
                self._hydration_listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------
    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def _set(self, **changes: Any) -> None:
        for name, value in changes.items():
            setattr(self, name, value)
        persisted = [name for name in changes if name in PERSISTED_FIELDS]
        if persisted:
            self._persist(persisted)
        self._notify()

    def _persist(self, names: List[str]) -> None:
        # Only changed keys are written: before hydration the storage buffers
        # them and merges them over the file, so untouched keys keep disk values.
        values = {}
        for name in names:
            value = getattr(self, name)
            values[name] = value.to_dict() if hasattr(value, "to_dict") else value
        self.storage.update(values)

    def _establish_session(self, tokens: TokenResponse, **extra: Any) -> Optional[AuthUser]:
        self.tokens.set_tokens(tokens.access_token, tokens.expires_in)
        user = _map_user(tokens.user) or self.user
        self._set(
            user=user,
            is_authenticated=True,
            is_loading=False,
            error=None,
            session_error=None,
            **extra,
        )
        return user

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    async def login(
        self, email: str, password: str, active_role: Optional[str] = None
    ) -> LoginResult:
        self._set(is_loading=True, error=None, two_factor_pending=None)
        try:
            response = await self.client.login(email, password, active_role)
        except SessionGuardError as exc:
            self._set(is_loading=False, error=exc.message)
            raise

        if isinstance(response, TwoFactorChallengeResponse):
            pending = TwoFactorPendingSession(
                email=response.email,
                session_token=response.session_token,
                expires_at=response.expires_at,
            )
            self._set(is_loading=False, two_factor_pending=pending)
            return LoginResult(
                requires_two_factor=True, email=response.email, two_factor=pending
            )

        user = self._establish_session(response)
        logger.info("login_succeeded", email=redact_email(email))
        return LoginResult(requires_two_factor=False, email=email, user=user)

    async def verify_otp(self, code: str) -> Optional[AuthUser]:
        """Verify a code against the pending challenge.

        Returns the authenticated user, or None when the challenge was
        cancelled or replaced while the request was in flight.
        """
        pending = self.two_factor_pending
        if pending is None:
            raise NoPendingSessionError("No 2FA session pending")

        self._set(is_loading=True, error=None)
        try:
            tokens = await self.client.verify_otp(pending.session_token, code)
        except SessionGuardError as exc:
            if self.two_factor_pending is pending:
                self._set(is_loading=False, error=exc.message)
            logger.info("otp_verification_failed", error_code=exc.error_code)
            raise

        if self.two_factor_pending is not pending:
            logger.info("otp_verification_result_dropped", reason="challenge_changed")
            self._set(is_loading=False)
            return None

        user = self._establish_session(tokens, two_factor_pending=None)
        logger.info("otp_verified", email=redact_email(pending.email))
        return user

    async def resend_otp(self) -> None:
        pending = self.two_factor_pending
        if pending is None:
            raise NoPendingSessionError("No 2FA session pending")

        self._set(is_loading=True, error=None)
        try:
            response = await self.client.resend_otp(pending.session_token)
        except SessionGuardError as exc:
            if self.two_factor_pending is pending:
                self._set(is_loading=False, error=exc.message)
            raise

        if self.two_factor_pending is not pending:
            self._set(is_loading=False)
            return
        if response.expires_at:
            refreshed = TwoFactorPendingSession(
                email=pending.email,
                session_token=pending.session_token,
                pending_since=pending.pending_since,
                expires_at=response.expires_at,
            )
            self._set(is_loading=False, two_factor_pending=refreshed)
        else:
            self._set(is_loading=False)
        logger.info("otp_resent", email=redact_email(pending.email))

    async def logout(self) -> None:
        self._set(is_loading=True)
        try:
            await self.client.logout()
        except SessionGuardError as exc:
            # Local state is cleared regardless of what the backend says
            logger.warning("logout_api_error", error=exc.message)
        finally:
            self.tokens.clear_tokens()
            self._set(user=None, is_authenticated=False, is_loading=False, error=None)

    def handle_session_expiry(self) -> None:
        self.tokens.clear_tokens()
        self._set(
            user=None,
            is_authenticated=False,
            is_loading=False,
            error=None,
            session_error=SESSION_EXPIRED_MESSAGE,
        )
        logger.info("session_expired")

    def clear_two_factor_state(self) -> None:
        self._set(two_factor_pending=None)

    def set_error(self, error: Optional[str]) -> None:
        self._set(error=error)

    def clear_error(self) -> None:
        self._set(error=None)

    def clear_session_error(self) -> None:
        self._set(session_error=None)
