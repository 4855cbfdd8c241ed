# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Channel Client

Assigns the device to a deployment channel on the update server. The
locally stored channel is what the updater uses; server failures never
undo a local change.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from .storage import ManifestHandle

logger = logging.getLogger(__name__)

PLATFORM = "python"


@dataclass
class ChannelResult:
    status: str
    error: Optional[str] = None
    message: Optional[str] = None


@dataclass
class ChannelState:
    status: str
    channel: Optional[str] = None
    allow_set: bool = True
    error: Optional[str] = None
    message: Optional[str] = None


@dataclass
class ChannelInfo:
    id: str
    name: str
    public: bool = False
    allow_self_set: bool = True


@dataclass
class ChannelListResult:
    channels: List[ChannelInfo] = field(default_factory=list)


def request_headers(
    app_id: str,
    device_id: str,
    plugin_version: str,
    custom_id: Optional[str] = None,
    channel: Optional[str] = None,
) -> Dict[str, str]:
    """Identification headers sent with channel and stats requests."""
    headers = {
        "Content-Type": "application/json",
        "cap_app_id": app_id,
        "cap_device_id": device_id,
        "cap_plugin_version": plugin_version,
        "cap_platform": PLATFORM,
    }
    if custom_id:
        headers["cap_custom_id"] = custom_id
    if channel:
        headers["cap_channel"] = channel
    return headers


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class ChannelClient:
    """
    Talks to the channel endpoint.

    Args:
        storage: Loaded manifest; the channel is stored there.
        channel_url: Endpoint for channel requests.
        app_id: Application id.
        plugin_version: Version reported in the request headers.
        custom_id: Returns the current custom id, if any.
        default_channel: Used when no channel has been set locally.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        storage: ManifestHandle,
        channel_url: str,
        app_id: str,
        plugin_version: str,
        custom_id: Callable[[], Optional[str]] = lambda: None,
        default_channel: Optional[str] = None,
        timeout: int = 20,
    ):
        self.storage = storage
        self.channel_url = channel_url
        self.app_id = app_id
        self.plugin_version = plugin_version
        self.default_channel = default_channel
        self.timeout = timeout
        self._custom_id = custom_id

    async def set_channel(self, channel: str) -> ChannelResult:
        try:
            response = await self._request("POST", {"channel": channel, "action": "set"})
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Failed to set channel %s: %s", channel, e)
            return ChannelResult(status="error", error=str(e))

        status = str(response.get("status") or "ok")
        if status in ("ok", "success"):
            async with self.storage.lock:
                self.storage.manifest.channel = channel
                await self.storage.save()
            logger.info("Channel set to %s", channel)

        return ChannelResult(
            status=status,
            error=_optional_str(response.get("error")),
            message=_optional_str(response.get("message")),
        )

    async def unset_channel(self) -> None:
        try:
            await self._request("POST", {"action": "unset"})
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            # Local state is what matters
            logger.debug("Channel unset request failed: %s", e)

        async with self.storage.lock:
            self.storage.manifest.channel = None
            await self.storage.save()
        logger.info("Channel unset")

    async def get_channel(self) -> ChannelState:
        try:
            response = await self._request("GET")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug("Channel lookup failed, using local state: %s", e)
            return ChannelState(status="ok", channel=self.effective_channel())

        channel = response.get("channel")
        allow_set = response.get("allow_set")
        return ChannelState(
            status=str(response.get("status") or "ok"),
            channel=str(channel) if channel is not None else self.effective_channel(),
            allow_set=bool(allow_set) if allow_set is not None else True,
            error=_optional_str(response.get("error")),
            message=_optional_str(response.get("message")),
        )

    async def list_channels(self) -> ChannelListResult:
        try:
            response = await self._request("GET", {"action": "list"})
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug("Channel list failed: %s", e)
            return ChannelListResult()

        raw = response.get("channels")
        if not isinstance(raw, list):
            return ChannelListResult()
        return ChannelListResult(channels=[
            ChannelInfo(
                id=str(ch.get("id", "")),
                name=str(ch.get("name", "")),
                public=bool(ch.get("public")),
                allow_self_set=bool(ch.get("allow_self_set", ch.get("allow_set", True))),
            )
            for ch in raw
            if isinstance(ch, dict)
        ])

    def effective_channel(self) -> Optional[str]:
        """Locally set channel, or the configured default."""
        return self.storage.manifest.channel or self.default_channel

    async def _request(self, method: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = request_headers(
            self.app_id,
            self.storage.device_id,
            self.plugin_version,
            custom_id=self._custom_id(),
        )
        async with aiohttp.ClientSession() as session:
            async with session.request(
                method,
                self.channel_url,
                headers=headers,
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                resp.raise_for_status()
                data = await resp.json(content_type=None)
        if not isinstance(data, dict):
            raise ValueError("Channel endpoint returned a non-object response")
        return data
