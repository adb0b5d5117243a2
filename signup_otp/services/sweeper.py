"""
Retention sweep — garbage-collects stale coordination rows.

Runs as a background asyncio task next to the API.  On each tick it:

1.  Deletes rate-limit windows whose period and block have both passed.
2.  Deletes OTP records that expired more than OTP_RETENTION_HOURS ago
    (recent ones are kept for auditing).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from signup_otp import config
from signup_otp.db import utcnow
from signup_otp.services.otp_store import OTPStore
from signup_otp.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class RetentionSweeper:
    def __init__(
        self,
        store: OTPStore,
        limiter: RateLimiter,
        *,
        interval: float = config.SWEEP_INTERVAL,
        retention: timedelta = timedelta(hours=config.OTP_RETENTION_HOURS),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._limiter = limiter
        self._interval = interval
        self._retention = retention
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    # ── Lifecycle ──────────────────────────────────────────────────────

    async def start(self) -> None:
        self._task = asyncio.create_task(self._loop(), name="retention-sweep")
        logger.info("Retention sweep started (every %ds)", self._interval)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("Retention sweep stopped")

    # ── Background loop ───────────────────────────────────────────────

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Retention sweep failed — will retry next cycle")

    async def sweep(self) -> tuple[int, int]:
        """One sweep cycle; returns (rate-limit rows, OTP rows) removed."""
        windows = await self._limiter.purge_expired()
        records = await self._store.purge_stale(self._clock() - self._retention)
        return windows, records
