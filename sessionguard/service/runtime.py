from __future__ import annotations

import asyncio
import threading
from typing import Optional

import httpx

from sessionguard.api.client import IdentityClient
from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.auth import AuthSessionStore
from sessionguard.service.clock import Clock, SystemClock
from sessionguard.service.otp import Navigate, Notify, OtpVerificationFlow, Sleep
from sessionguard.service.rate_limit import RateLimitConfig, RateLimiter
from sessionguard.service.token_monitor import TokenLifecycleMonitor
from sessionguard.service.tokens import IssuedToken, TokenManager
from sessionguard.storage.memory import PersistentSessionStore

logger = get_logger(__name__)


class Runtime:
    """Holds the per-application singletons of the session layer.

    One Runtime corresponds to one loaded client; rebuilding it is the
    equivalent of a full reload, which drops rate-limit windows, the access
    token and the expiry latch while persisted session flags survive on disk.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            api_base_url=self.settings.api_base_url,
            test_mode=self.settings.test_mode,
        )

        self.rate_limiter = RateLimiter(
            clock=self.clock,
            default_config=RateLimitConfig(
                max_requests=self.settings.rate_limit_default_max_requests,
                window_ms=self.settings.rate_limit_default_window_ms,
            ),
            auth_config=RateLimitConfig(
                max_requests=self.settings.rate_limit_auth_max_requests,
                window_ms=self.settings.rate_limit_auth_window_ms,
            ),
            auth_marker=self.settings.rate_limit_auth_marker,
        )
        self.tokens = TokenManager(
            clock=self.clock,
            expiry_buffer_ms=self.settings.token_expiry_buffer_ms,
            default_expires_in=self.settings.token_default_expires_in_seconds,
        )
        self.storage = PersistentSessionStore(fs_root=self.settings.state_dir)
        self.client = IdentityClient(
            base_url=self.settings.api_base_url,
            rate_limiter=self.rate_limiter,
            timeout=self.settings.api_timeout_seconds,
            development=self.settings.development_mode,
            tokens=self.tokens,
            transport=transport,
        )
        self.tokens.set_refresh_fn(self._refresh)
        self.auth = AuthSessionStore(
            client=self.client, tokens=self.tokens, storage=self.storage
        )
        self.token_monitor = TokenLifecycleMonitor(
            self.tokens,
            lambda: self.auth.is_authenticated,
            clock=self.clock,
            warning_threshold_ms=self.settings.token_warning_threshold_ms,
            check_interval_ms=self.settings.token_check_interval_ms,
        )
        logger.info("runtime_init_completed")

    async def _refresh(self) -> IssuedToken:
        response = await self.client.refresh()
        return IssuedToken(access_token=response.access_token, expires_in=response.expires_in)

    async def hydrate(self) -> None:
        """Restore persisted session flags, as on page load."""
        await self.storage.hydrate()

    def create_otp_flow(
        self,
        *,
        navigate: Navigate,
        notify: Optional[Notify] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> OtpVerificationFlow:
        return OtpVerificationFlow(
            self.auth,
            navigate=navigate,
            notify=notify,
            code_length=self.settings.otp_length,
            resend_cooldown_seconds=self.settings.otp_resend_cooldown_seconds,
            sleep=sleep,
        )

    def reset(self) -> None:
        """Clear in-memory singletons without touching persisted flags."""
        self.rate_limiter.reset()
        self.tokens.reset()
        self.token_monitor.reset()

    async def aclose(self) -> None:
        self.token_monitor.stop()
        await self.client.aclose()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.reset()
            try:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.client.aclose())
                except RuntimeError:
                    asyncio.run(runtime.client.aclose())
            except Exception as exc:
                # Connections bound to a finished event loop may refuse to close
                logger.debug("runtime_client_close_failed", error=str(exc))
        runtime = None
        reset_settings_cache()
