from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from sessionguard.logging import get_logger
from sessionguard.service.clock import Clock, SystemClock
from sessionguard.service.errors import RefreshError, TransportError
from sessionguard.service.tokens import TokenManager
from sessionguard.storage.models import TokenExpiry

logger = get_logger(__name__)

WARNING_THRESHOLD_MS = 2 * 60 * 1000
CHECK_INTERVAL_MS = 30 * 1000
EXTENDED_MESSAGE = "Session extended successfully"


@dataclass(frozen=True)
class ExpiryWarning:
    remaining_ms: int
    minutes: int
    message: str
    duration_ms: int
    description: str = 'Click "Extend" to stay logged in.'
    action_label: str = "Extend Session"


ExpiryListener = Callable[[ExpiryWarning], None]
Notify = Callable[[str, str], None]
Sleep = Callable[[float], Awaitable[None]]


def build_warning(remaining_ms: int, threshold_ms: int = WARNING_THRESHOLD_MS) -> ExpiryWarning:
    minutes = math.ceil(remaining_ms / 60_000)
    plural = "" if minutes == 1 else "s"
    return ExpiryWarning(
        remaining_ms=remaining_ms,
        minutes=minutes,
        message=f"Your session expires in ~{minutes} minute{plural}",
        duration_ms=min(remaining_ms, threshold_ms),
    )


class TokenLifecycleMonitor:
    """Warns once before the access token expires and offers an extension.

    The one-shot latch in ``expiry.warning_already_shown`` is raised when the
    warning is emitted and lowered only when a check observes more than the
    threshold remaining (a refresh happened), when ``extend()`` succeeds, or
    when the session is no longer authenticated. Expired tokens are left to
    the API layer's session-expired handling.
    """

    def __init__(
        self,
        tokens: TokenManager,
        is_authenticated: Callable[[], bool],
        *,
        clock: Clock | None = None,
        warning_threshold_ms: int = WARNING_THRESHOLD_MS,
        check_interval_ms: int = CHECK_INTERVAL_MS,
        notify: Optional[Notify] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.tokens = tokens
        self.is_authenticated = is_authenticated
        self.clock = clock or tokens.clock or SystemClock()
        self.warning_threshold_ms = warning_threshold_ms
        self.check_interval_ms = check_interval_ms
        self.notify = notify
        self._sleep = sleep
        self.expiry = TokenExpiry()
        self._listeners: List[ExpiryListener] = []
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, listener: ExpiryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def warning_shown(self) -> bool:
        return self.expiry.warning_already_shown

    def check(self) -> Optional[ExpiryWarning]:
        """Run one expiry check; returns the warning if one was emitted."""
        if not self.is_authenticated():
            self.expiry.warning_already_shown = False
            return None

        expires_at = self.tokens.get_token_expiry()
        self.expiry.expires_at_epoch_ms = expires_at
        if not expires_at:
            return None

        remaining = expires_at - self.clock.now_ms()
        if remaining > self.warning_threshold_ms:
            # Token was refreshed through some other path
            self.expiry.warning_already_shown = False
            return None

        if remaining <= 0 or self.expiry.warning_already_shown:
            return None

        self.expiry.warning_already_shown = True
        warning = build_warning(remaining, self.warning_threshold_ms)
        logger.info("session_expiry_warning", remaining_ms=remaining)
        for listener in list(self._listeners):
            try:
                listener(warning)
            except Exception as exc:
                # One broken subscriber must not stop the interval task
                logger.warning(
                    "session_expiry_listener_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return warning

    async def extend(self) -> bool:
        """Refresh the access token in response to the warning's action."""
        try:
            await self.tokens.get_fresh_access_token()
        except (RefreshError, TransportError) as exc:
            # Recovery belongs to the session-expired flow
            logger.warning("session_extend_failed", error=exc.message)
            return False
        self.expiry.warning_already_shown = False
        self.expiry.expires_at_epoch_ms = self.tokens.get_token_expiry()
        if self.notify is not None:
            self.notify("success", EXTENDED_MESSAGE)
        return True

    def start(self) -> None:
        """Check now, then keep checking on the interval until ``stop()``."""
        if self._task is not None and not self._task.done():
            return
        self.check()
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await self._sleep(self.check_interval_ms / 1000)
            self.check()

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def watch(
        self, subscribe: Callable[[Callable[[object], None]], Callable[[], None]]
    ) -> Callable[[], None]:
        """Run while authenticated, following a store's change notifications.

        Returns a teardown callable that unsubscribes and stops the timer.
        """

        def on_change(_state: object) -> None:
            if self.is_authenticated():
                self.start()
            else:
                self.stop()
                self.expiry.warning_already_shown = False

        unsubscribe = subscribe(on_change)
        on_change(None)

        def teardown() -> None:
            unsubscribe()
            self.stop()

        return teardown

    def reset(self) -> None:
        self.stop()
        self.expiry = TokenExpiry()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
