from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sessionguard.logging import get_logger
from sessionguard.service.clock import Clock, SystemClock
from sessionguard.service.errors import RefreshError

logger = get_logger(__name__)


@dataclass
class IssuedToken:
    access_token: str
    expires_in: Optional[int] = None


RefreshFn = Callable[[], Awaitable[IssuedToken]]


class TokenManager:
    """Holds the in-memory access token and its expiry.

    The recorded expiry is the issued lifetime minus a safety buffer so that
    requests never go out with a token about to lapse in flight.
    Refreshes are deduplicated: concurrent callers of
    ``get_fresh_access_token`` share a single refresh request.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        refresh_fn: RefreshFn | None = None,
        expiry_buffer_ms: int = 30_000,
        default_expires_in: int = 900,
    ) -> None:
        self.clock = clock or SystemClock()
        self.refresh_fn = refresh_fn
        self.expiry_buffer_ms = expiry_buffer_ms
        self.default_expires_in = default_expires_in
        self._access_token: Optional[str] = None
        self._expires_at: Optional[int] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._on_session_expired: Optional[Callable[[], None]] = None

    def set_session_expired_handler(self, handler: Optional[Callable[[], None]]) -> None:
        self._on_session_expired = handler

    def set_refresh_fn(self, refresh_fn: RefreshFn) -> None:
        self.refresh_fn = refresh_fn

    def set_tokens(self, access_token: str, expires_in: Optional[int] = None) -> None:
        lifetime = expires_in or self.default_expires_in
        self._access_token = access_token
        self._expires_at = self.clock.now_ms() + lifetime * 1000 - self.expiry_buffer_ms
        logger.debug("access_token_set", expires_at=self._expires_at)

    def get_access_token(self) -> Optional[str]:
        return self._access_token

    def get_token_expiry(self) -> Optional[int]:
        return self._expires_at

    def clear_tokens(self) -> None:
        self._access_token = None
        self._expires_at = None

    def is_token_expired(self) -> bool:
        if not self._expires_at:
            return True
        return self.clock.now_ms() >= self._expires_at

    async def get_fresh_access_token(self) -> str:
        """Refresh the access token, joining any refresh already in flight.

        The refresh runs in its own task; cancelling one caller does not
        abort it for the others.
        """
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.create_task(self._refresh())
            task.add_done_callback(self._refresh_finished)
            self._refresh_task = task
        else:
            logger.debug("token_refresh_joined")
        return await asyncio.shield(task)

    def _refresh_finished(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Retrieved so a refresh whose callers all left does not warn
            task.exception()

    async def _refresh(self) -> str:
        if self.refresh_fn is None:
            raise RefreshError("No refresh function configured")
        try:
            issued = await self.refresh_fn()
        except RefreshError as exc:
            self._expire_session(exc.message)
            raise
        self.set_tokens(issued.access_token, issued.expires_in)
        logger.info("token_refreshed", expires_at=self._expires_at)
        return issued.access_token

    def _expire_session(self, reason: str) -> None:
        logger.warning("token_refresh_failed", reason=reason)
        self.clear_tokens()
        if self._on_session_expired is not None:
            self._on_session_expired()

    def reset(self) -> None:
        self.clear_tokens()
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None
