# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Statistics Client

Reports lifecycle events to the stats endpoint. Reporting is fire and
forget: failures are logged and never reach the caller. An empty stats
URL disables reporting altogether.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import aiohttp

from .channels import request_headers

logger = logging.getLogger(__name__)

# Event names understood by the stats endpoint
STATS_EVENTS = {
    "DOWNLOAD_COMPLETE": "download_complete",
    "DOWNLOAD_FAILED": "download_fail",
    "DOWNLOAD_START": "download_start",
    "UPDATE_SUCCESS": "set",
    "UPDATE_FAILED": "set_fail",
    "ROLLBACK": "rollback",
    "NO_NEW": "no_new",
    "NEW_AVAILABLE": "new_available",
}


class StatsClient:
    """Posts lifecycle events to the stats endpoint."""

    def __init__(
        self,
        stats_url: str,
        app_id: str,
        device_id: str,
        plugin_version: str,
        custom_id: Callable[[], Optional[str]] = lambda: None,
        channel: Callable[[], Optional[str]] = lambda: None,
        timeout: int = 20,
    ):
        self.app_id = app_id
        self.device_id = device_id
        self.plugin_version = plugin_version
        self.timeout = timeout
        self._custom_id = custom_id
        self._channel = channel
        self.stats_url = ""
        self.set_stats_url(stats_url)

    @property
    def enabled(self) -> bool:
        return bool(self.stats_url)

    def set_stats_url(self, url: str) -> None:
        self.stats_url = url or ""
        if not self.stats_url:
            logger.info("Statistics reporting disabled")

    async def send_event(self, event: str, **fields: Optional[str]) -> None:
        """Send one event. Never raises."""
        if not self.enabled:
            return
        payload: Dict[str, Any] = {"event": event}
        payload.update({k: v for k, v in fields.items() if v is not None})
        try:
            await self._post(payload)
            logger.debug("Sent stats event %s", event)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            # Stats failures should not affect app operation
            logger.warning("Failed to send stats event %s: %s", event, e)

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def send_no_new_version(self, current_version: str) -> None:
        await self.send_event(STATS_EVENTS["NO_NEW"], version=current_version)

    async def send_new_version_available(self, new_version: str, current_version: str) -> None:
        await self.send_event(
            STATS_EVENTS["NEW_AVAILABLE"], version=new_version, oldVersion=current_version
        )

    async def send_download_start(self, version: str) -> None:
        await self.send_event(STATS_EVENTS["DOWNLOAD_START"], version=version)

    async def send_download_complete(self, version: str, bundle_id: str) -> None:
        await self.send_event(STATS_EVENTS["DOWNLOAD_COMPLETE"], version=version, bundleId=bundle_id)

    async def send_download_failed(self, version: str, message: str) -> None:
        await self.send_event(STATS_EVENTS["DOWNLOAD_FAILED"], version=version, message=message)

    async def send_update_success(self, version: str, bundle_id: str) -> None:
        await self.send_event(STATS_EVENTS["UPDATE_SUCCESS"], version=version, bundleId=bundle_id)

    async def send_update_failed(self, version: str, bundle_id: str, message: str) -> None:
        await self.send_event(
            STATS_EVENTS["UPDATE_FAILED"], version=version, bundleId=bundle_id, message=message
        )

    async def send_rollback(self, from_version: str, to_version: str) -> None:
        await self.send_event(STATS_EVENTS["ROLLBACK"], version=to_version, oldVersion=from_version)

    async def _post(self, payload: Dict[str, Any]) -> None:
        headers = request_headers(
            self.app_id,
            self.device_id,
            self.plugin_version,
            custom_id=self._custom_id(),
            channel=self._channel(),
        )
        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.stats_url,
                headers=headers,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                resp.raise_for_status()
