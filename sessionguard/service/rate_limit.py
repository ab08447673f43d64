from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from sessionguard.logging import get_logger
from sessionguard.service.clock import Clock, SystemClock
from sessionguard.storage.models import RateLimitWindow

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: Optional[int] = None


DEFAULT_CONFIG = RateLimitConfig(max_requests=100, window_ms=60_000)
AUTH_CONFIG = RateLimitConfig(max_requests=5, window_ms=60_000)
AUTH_PATH_MARKER = "/auth/"


def normalize_endpoint_key(endpoint: str) -> str:
    """Drop the query string so parameterized calls share one counter."""
    return endpoint.split("?", 1)[0]


class RateLimiter:
    """Fixed-window request gate keyed by logical endpoint.

    Counters live in process memory only. Each key gets a window opened by its
    first request; once ``now >= reset_at`` the window is replaced, never
    incremented. The limiter only decides: callers must skip the network call
    when a decision is not ``allowed``.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        default_config: RateLimitConfig = DEFAULT_CONFIG,
        auth_config: RateLimitConfig = AUTH_CONFIG,
        auth_marker: str = AUTH_PATH_MARKER,
    ) -> None:
        self.clock = clock or SystemClock()
        self.default_config = default_config
        self.auth_config = auth_config
        self.auth_marker = auth_marker
        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()

    def get_rate_limit_config(self, endpoint: str) -> RateLimitConfig:
        if self.auth_marker in normalize_endpoint_key(endpoint):
            return self.auth_config
        return self.default_config

    def check_rate_limit(
        self, endpoint: str, config: RateLimitConfig | None = None
    ) -> RateLimitDecision:
        if config is None:
            config = self.get_rate_limit_config(endpoint)
        elif config.max_requests <= 0 or config.window_ms <= 0:
            logger.warning(
                "rate_limit_invalid_config",
                endpoint=endpoint,
                max_requests=config.max_requests,
                window_ms=config.window_ms,
                message="Invalid rate limit config; falling back to default",
            )
            config = self.default_config

        key = normalize_endpoint_key(endpoint)
        now = self.clock.now_ms()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at_epoch_ms:
                self._windows[key] = RateLimitWindow(
                    count=1, reset_at_epoch_ms=now + config.window_ms
                )
                return RateLimitDecision(allowed=True)

            if window.count >= config.max_requests:
                retry_after = max(1, math.ceil((window.reset_at_epoch_ms - now) / 1000))
                logger.info(
                    "rate_limit_exceeded",
                    endpoint=key,
                    count=window.count,
                    retry_after_seconds=retry_after,
                )
                return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)

            window.count += 1
            return RateLimitDecision(allowed=True)

    def window_for(self, endpoint: str) -> Optional[RateLimitWindow]:
        with self._lock:
            return self._windows.get(normalize_endpoint_key(endpoint))

    def reset(self) -> None:
        """Forget every window, as on a full application reload."""
        with self._lock:
            self._windows.clear()
