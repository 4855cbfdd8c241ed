# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Readiness Watchdog

After a new bundle is activated the host application has a bounded window
to say "I am healthy". If it does, the bundle is recorded as the last
successful one; if the window closes first, the bundle is rolled back.

States:
  idle -> armed -> confirmed
                -> expired

Re-arming cancels any outstanding timer. The watchdog never re-arms itself.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# schedule(delay_seconds, callback) -> handle with .cancel()
Scheduler = Callable[[float, Callable[[], None]], Any]


class WatchdogState(str, Enum):
    """Observable state of the watchdog."""
    IDLE = "idle"
    ARMED = "armed"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"


def _loop_scheduler(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class ReadinessWatchdog:
    """
    Single-shot readiness timer.

    Args:
        timeout_ms: Window in milliseconds for the ready signal.
        on_confirmed: Awaited when the ready signal arrives in time.
        on_expired: Run as a task when the window closes unconfirmed.
        scheduler: Timer factory; defaults to the running loop's call_later.
    """

    def __init__(
        self,
        timeout_ms: int,
        on_confirmed: Callable[[], Awaitable[Any]],
        on_expired: Callable[[], Awaitable[Any]],
        scheduler: Optional[Scheduler] = None,
    ):
        self.timeout_ms = timeout_ms
        self._on_confirmed = on_confirmed
        self._on_expired = on_expired
        self._scheduler = scheduler or _loop_scheduler
        self._state = WatchdogState.IDLE
        self._timer: Any = None
        self._bundle_id: Optional[str] = None
        self._expiry_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> WatchdogState:
        return self._state

    @property
    def bundle_id(self) -> Optional[str]:
        """The bundle the watchdog is (or was last) guarding."""
        return self._bundle_id

    def arm(self, bundle_id: str) -> None:
        """Start the readiness window for a freshly activated bundle."""
        self._cancel_timer()
        self._bundle_id = bundle_id
        self._state = WatchdogState.ARMED
        self._timer = self._scheduler(self.timeout_ms / 1000.0, self._expire)
        logger.info("Readiness watchdog armed for %s (%d ms)", bundle_id, self.timeout_ms)

    async def confirm(self) -> bool:
        """
        Positive readiness signal from the host application.

        Returns True if this signal confirmed an armed bundle, False if the
        watchdog was not armed (already confirmed, expired, or idle).
        """
        if self._state != WatchdogState.ARMED:
            logger.debug("Ready signal ignored, watchdog is %s", self._state.value)
            return False
        self._cancel_timer()
        self._state = WatchdogState.CONFIRMED
        logger.info("Bundle %s confirmed ready", self._bundle_id)
        await self._on_confirmed()
        return True

    def cancel(self) -> None:
        """Disarm without any manifest side effect."""
        self._cancel_timer()
        if self._state == WatchdogState.ARMED:
            self._state = WatchdogState.IDLE
            logger.debug("Readiness watchdog cancelled")

    async def join(self) -> None:
        """Wait for an in-flight expiry (rollback) to finish; re-raises its error."""
        if self._expiry_task is not None:
            await self._expiry_task

    def _expire(self) -> None:
        self._timer = None
        if self._state != WatchdogState.ARMED:
            return
        self._state = WatchdogState.EXPIRED
        logger.warning(
            "Bundle %s did not report ready within %d ms, rolling back",
            self._bundle_id,
            self.timeout_ms,
        )
        self._expiry_task = asyncio.ensure_future(self._on_expired())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
