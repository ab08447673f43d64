from __future__ import annotations

import asyncio
import re
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from sessionguard.logging import get_logger
from sessionguard.service.auth import LOGIN_PATH, AuthSessionStore, role_home_route
from sessionguard.service.errors import (
    NoPendingSessionError,
    RateLimitedError,
    ResendError,
    ValidationError,
    VerificationError,
)
from sessionguard.storage.models import OtpEntryState

logger = get_logger(__name__)

Navigate = Callable[[str], None]
Notify = Callable[[str, str], None]
Sleep = Callable[[float], Awaitable[None]]

_NON_DIGITS = re.compile(r"[^0-9]")
RESEND_SUCCESS_MESSAGE = "A new verification code has been sent"


class FlowState(str, Enum):
    AWAITING_HYDRATION = "awaiting_hydration"
    NO_PENDING_SESSION = "no_pending_session"
    ACTIVE = "active"
    SUBMITTING = "submitting"
    RESENDING = "resending"
    VERIFIED = "verified"
    CANCELLED = "cancelled"
    UNMOUNTED = "unmounted"


def _is_numeric(value: str) -> bool:
    return value.isascii() and value.isdigit()


class OtpVerificationFlow:
    """Drives the one-time-passcode form from mount to verified session.

    The flow never decides whether a 2FA challenge exists until the auth
    store reports that persisted state has been restored. Every await on the
    identity provider is followed by a state check, so results that land
    after cancel, unmount or a superseding action are dropped.

    Auto-submit fires once per completed fill. The latch re-arms only when a
    slot becomes empty again (or a resend clears the form); editing a digit of
    an already complete code needs an explicit ``submit()``.
    """

    def __init__(
        self,
        auth: AuthSessionStore,
        *,
        navigate: Navigate,
        notify: Optional[Notify] = None,
        code_length: int = 6,
        resend_cooldown_seconds: int = 60,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.auth = auth
        self.navigate = navigate
        self.notify = notify
        self.code_length = code_length
        self.resend_cooldown_seconds = resend_cooldown_seconds
        self._sleep = sleep
        self.state = FlowState.AWAITING_HYDRATION
        self.entry = OtpEntryState.blank(code_length)
        self.error: Optional[str] = None
        self._auto_submitted = False
        self._cooldown_task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def mount(self) -> None:
        self.entry.focused_index = 0
        self._unsubscribers.append(self.auth.subscribe(self._on_auth_changed))
        self._unsubscribers.append(self.auth.on_hydration_finished(self._on_hydrated))
        # Hydration may have finished before the flow was mounted
        if self.auth.has_hydrated():
            self._on_hydrated()

    def unmount(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._cancel_cooldown()
        self.state = FlowState.UNMOUNTED
        self.error = None
        self.auth.clear_error()

    def _on_hydrated(self) -> None:
        if self.state is FlowState.AWAITING_HYDRATION:
            self._evaluate_pending()

    def _on_auth_changed(self, auth: AuthSessionStore) -> None:
        # A challenge cleared elsewhere (another form, session expiry) ends the flow
        if self.state in (FlowState.ACTIVE, FlowState.RESENDING) and auth.two_factor_pending is None:
            self._evaluate_pending()

    def _evaluate_pending(self) -> None:
        if self.auth.two_factor_pending is None:
            self.state = FlowState.NO_PENDING_SESSION
            self._cancel_cooldown()
            logger.info("otp_flow_no_pending_session")
            self.navigate(LOGIN_PATH)
            return
        self.state = FlowState.ACTIVE

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------
    @property
    def digits(self) -> List[str]:
        return list(self.entry.digits)

    @property
    def email(self) -> Optional[str]:
        pending = self.auth.two_factor_pending
        return pending.email if pending else None

    @property
    def display_error(self) -> Optional[str]:
        return self.error or self.auth.error

    @property
    def can_submit(self) -> bool:
        return self.state is FlowState.ACTIVE and self.entry.is_complete

    @property
    def can_resend(self) -> bool:
        return (
            self.state is FlowState.ACTIVE
            and self.entry.resend_cooldown_seconds == 0
            and not self.entry.is_resending
        )

    # ------------------------------------------------------------------
    # Digit entry
    # ------------------------------------------------------------------
    async def submit_digit(self, index: int, value: str) -> bool:
        """Apply an edit to one slot; returns False when the edit was rejected."""
        if self.state is not FlowState.ACTIVE:
            return False
        if not 0 <= index < self.code_length:
            return False
        if value and not _is_numeric(value):
            return False

        digits = list(self.entry.digits)
        digits[index] = value[-1:] if value else ""
        self.entry.digits = digits

        if value and index < self.code_length - 1:
            self.entry.focused_index = index + 1

        if "" in digits:
            self._auto_submitted = False
            return True

        # Decide on the list just built, not on a previously captured one
        if value and not self._auto_submitted:
            self._auto_submitted = True
            await self._verify("".join(digits))
        return True

    def handle_key_down(self, index: int, key: str) -> None:
        if key == "Backspace" and index > 0 and not self.entry.digits[index]:
            self.entry.focused_index = index - 1

    async def handle_paste(self, text: str) -> bool:
        if self.state is not FlowState.ACTIVE:
            return False
        pasted = _NON_DIGITS.sub("", text or "")[: self.code_length]
        if len(pasted) != self.code_length:
            return False
        self.entry.digits = list(pasted)
        self.entry.focused_index = self.code_length - 1
        self._auto_submitted = True
        await self._verify(pasted)
        return True

    async def submit(self) -> bool:
        """Explicit verify action for a complete code."""
        if not self.can_submit:
            return False
        self._auto_submitted = True
        return await self._verify(self.entry.code)

    async def _verify(self, code: str) -> bool:
        self.state = FlowState.SUBMITTING
        self.entry.is_submitting = True
        self.error = None
        try:
            user = await self.auth.verify_otp(code)
        except (
            VerificationError,
            ValidationError,
            RateLimitedError,
            NoPendingSessionError,
        ) as exc:
            if self.state is not FlowState.SUBMITTING:
                logger.info("otp_late_result_dropped", action="verify", outcome="error")
                return False
            self.entry.is_submitting = False
            self.state = FlowState.ACTIVE
            self.error = exc.message
            if isinstance(exc, NoPendingSessionError):
                self._evaluate_pending()
            return False
        except BaseException:
            if self.state is FlowState.SUBMITTING:
                self.entry.is_submitting = False
                self.state = FlowState.ACTIVE
            raise

        if self.state is not FlowState.SUBMITTING:
            logger.info("otp_late_result_dropped", action="verify", outcome="success")
            return False

        self.entry.is_submitting = False
        if user is None:
            self._evaluate_pending()
            return False

        self.state = FlowState.VERIFIED
        self._cancel_cooldown()
        self.navigate(role_home_route(user.role))
        return True

    # ------------------------------------------------------------------
    # Resend
    # ------------------------------------------------------------------
    async def resend(self) -> bool:
        if not self.can_resend:
            return False
        self.state = FlowState.RESENDING
        self.entry.is_resending = True
        self.error = None
        try:
            await self.auth.resend_otp()
        except (ResendError, RateLimitedError, NoPendingSessionError) as exc:
            if self.state is not FlowState.RESENDING:
                logger.info("otp_late_result_dropped", action="resend", outcome="error")
                return False
            self.entry.is_resending = False
            self.state = FlowState.ACTIVE
            self.error = exc.message
            self._toast("error", exc.message)
            if isinstance(exc, NoPendingSessionError):
                self._evaluate_pending()
            return False
        except BaseException:
            if self.state is FlowState.RESENDING:
                self.entry.is_resending = False
                self.state = FlowState.ACTIVE
            raise

        if self.state is not FlowState.RESENDING:
            logger.info("otp_late_result_dropped", action="resend", outcome="success")
            return False

        self.entry.is_resending = False
        self.state = FlowState.ACTIVE
        self.entry.digits = [""] * self.code_length
        self.entry.focused_index = 0
        self._auto_submitted = False
        self.entry.resend_cooldown_seconds = self.resend_cooldown_seconds
        self._start_cooldown()
        self._toast("success", RESEND_SUCCESS_MESSAGE)
        return True

    def tick_cooldown(self) -> None:
        if self.entry.resend_cooldown_seconds > 0:
            self.entry.resend_cooldown_seconds -= 1

    def _start_cooldown(self) -> None:
        self._cancel_cooldown()
        self._cooldown_task = asyncio.create_task(self._run_cooldown())

    async def _run_cooldown(self) -> None:
        while self.entry.resend_cooldown_seconds > 0:
            await self._sleep(1)
            self.tick_cooldown()

    def _cancel_cooldown(self) -> None:
        if self._cooldown_task is not None and not self._cooldown_task.done():
            self._cooldown_task.cancel()
        self._cooldown_task = None

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------
    def cancel(self) -> None:
        """Abandon the challenge and return to the login entry point."""
        if self.state in (FlowState.VERIFIED, FlowState.UNMOUNTED):
            return
        self.state = FlowState.CANCELLED
        self._cancel_cooldown()
        self.entry.is_submitting = False
        self.entry.is_resending = False
        self.auth.clear_two_factor_state()
        self.navigate(LOGIN_PATH)

    def _toast(self, level: str, message: str) -> None:
        if self.notify is not None:
            self.notify(level, message)
