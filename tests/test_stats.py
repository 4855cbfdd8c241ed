# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The LiveBundle Authors

"""
LiveBundle Statistics Client Tests

Fire-and-forget reporting with the HTTP layer patched out.
Run with: pytest tests/test_stats.py -v
"""

import asyncio
from unittest import mock
from unittest.mock import AsyncMock, MagicMock

import aiohttp


STATS_URL = "https://updates.example.com/stats"


def _stats(url=STATS_URL, **kwargs):
    from livebundle.stats import StatsClient

    return StatsClient(url, "com.example.app", "device-1", "1.4.0", **kwargs)


def test_empty_url_disables_reporting():
    from livebundle.stats import StatsClient

    stats = _stats(url="")
    post = AsyncMock()

    with mock.patch.object(StatsClient, "_post", new=post):
        asyncio.run(stats.send_download_start("1.0.1"))

    assert stats.enabled is False
    post.assert_not_awaited()


def test_set_stats_url_toggles_reporting():
    stats = _stats()
    assert stats.enabled is True

    stats.set_stats_url("")
    assert stats.enabled is False

    stats.set_stats_url(STATS_URL)
    assert stats.enabled is True


def test_event_payload_drops_missing_fields():
    from livebundle.stats import StatsClient

    stats = _stats()
    post = AsyncMock()

    async def scenario():
        with mock.patch.object(StatsClient, "_post", new=post):
            await stats.send_rollback("1.0.1", "1.0.0")
            await stats.send_event("custom", version="1.0.0", bundleId=None)

    asyncio.run(scenario())

    assert post.await_args_list[0].args == (
        {"event": "rollback", "version": "1.0.0", "oldVersion": "1.0.1"},
    )
    assert post.await_args_list[1].args == ({"event": "custom", "version": "1.0.0"},)


def test_transport_errors_never_raise():
    from livebundle.stats import StatsClient

    stats = _stats()

    async def scenario():
        with mock.patch.object(
            StatsClient, "_post", new=AsyncMock(side_effect=aiohttp.ClientConnectionError("down"))
        ):
            await stats.send_download_failed("1.0.1", "checksum mismatch")
        with mock.patch.object(StatsClient, "_post", new=AsyncMock(side_effect=asyncio.TimeoutError())):
            await stats.send_update_success("1.0.1", "b1")

    asyncio.run(scenario())


def test_post_sends_headers_and_payload():
    response = MagicMock()
    session = MagicMock()
    session.post.return_value.__aenter__.return_value = response
    session_cls = MagicMock()
    session_cls.return_value.__aenter__.return_value = session

    stats = _stats(custom_id=lambda: "user-42", channel=lambda: "beta")

    with mock.patch("aiohttp.ClientSession", session_cls):
        asyncio.run(stats.send_download_complete("1.0.1", "b1"))

    assert session.post.call_args.args == (STATS_URL,)
    kwargs = session.post.call_args.kwargs
    assert kwargs["json"] == {"event": "download_complete", "version": "1.0.1", "bundleId": "b1"}
    assert kwargs["headers"]["cap_device_id"] == "device-1"
    assert kwargs["headers"]["cap_custom_id"] == "user-42"
    assert kwargs["headers"]["cap_channel"] == "beta"
    response.raise_for_status.assert_called_once()
