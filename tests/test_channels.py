# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The LiveBundle Authors

"""
LiveBundle Channel Client Tests

Channel assignment against a patched-out channel endpoint.
Run with: pytest tests/test_channels.py -v
"""

import asyncio
from unittest import mock
from unittest.mock import AsyncMock, MagicMock

import aiohttp


CHANNEL_URL = "https://updates.example.com/channel_self"


def _serve(response):
    """Replacement for ChannelClient._request returning a fixed body."""
    async def request(self, method, body=None):
        return dict(response)
    return request


async def _unreachable(self, method, body=None):
    raise aiohttp.ClientConnectionError("connection refused")


async def _client(data_dir, **kwargs):
    from livebundle.channels import ChannelClient
    from livebundle.storage import ManifestStore

    handle = await ManifestStore(data_dir=data_dir, use_secure_storage=False).open()
    return ChannelClient(handle, CHANNEL_URL, "com.example.app", "1.4.0", **kwargs)


def _fake_session(body):
    """ClientSession stand-in whose request() yields `body` as JSON."""
    response = MagicMock()
    response.json = AsyncMock(return_value=body)
    session = MagicMock()
    session.request.return_value.__aenter__.return_value = response
    session_cls = MagicMock()
    session_cls.return_value.__aenter__.return_value = session
    return session_cls, session


# =============================================================================
# SET / UNSET
# =============================================================================

def test_set_channel_persists_on_success(data_dir):
    from livebundle.channels import ChannelClient
    from livebundle.storage import ManifestStore

    async def scenario():
        client = await _client(data_dir)
        with mock.patch.object(ChannelClient, "_request", new=_serve({"status": "ok"})):
            result = await client.set_channel("beta")
        reopened = await ManifestStore(data_dir=data_dir, use_secure_storage=False).open()
        return result, reopened

    result, reopened = asyncio.run(scenario())

    assert result.status == "ok"
    assert result.error is None
    assert reopened.manifest.channel == "beta"


def test_set_channel_rejected_keeps_local_state(data_dir):
    from livebundle.channels import ChannelClient

    rejected = {"status": "error", "error": "channel_self_set_not_allowed", "message": "nope"}

    async def scenario():
        client = await _client(data_dir)
        with mock.patch.object(ChannelClient, "_request", new=_serve(rejected)):
            result = await client.set_channel("beta")
        return client, result

    client, result = asyncio.run(scenario())

    assert result.status == "error"
    assert result.error == "channel_self_set_not_allowed"
    assert result.message == "nope"
    assert client.storage.manifest.channel is None


def test_set_channel_transport_error(data_dir):
    from livebundle.channels import ChannelClient

    async def scenario():
        client = await _client(data_dir)
        with mock.patch.object(ChannelClient, "_request", new=_unreachable):
            result = await client.set_channel("beta")
        return client, result

    client, result = asyncio.run(scenario())

    assert result.status == "error"
    assert "connection refused" in result.error
    assert client.storage.manifest.channel is None


def test_unset_channel_clears_even_when_unreachable(data_dir):
    from livebundle.channels import ChannelClient

    async def scenario():
        client = await _client(data_dir)
        with mock.patch.object(ChannelClient, "_request", new=_serve({"status": "ok"})):
            await client.set_channel("beta")
        with mock.patch.object(ChannelClient, "_request", new=_unreachable):
            await client.unset_channel()
        return client

    client = asyncio.run(scenario())

    assert client.storage.manifest.channel is None


# =============================================================================
# GET / LIST
# =============================================================================

def test_get_channel_from_server(data_dir):
    from livebundle.channels import ChannelClient

    body = {"status": "ok", "channel": "production", "allow_set": False}

    async def scenario():
        client = await _client(data_dir)
        with mock.patch.object(ChannelClient, "_request", new=_serve(body)):
            return await client.get_channel()

    state = asyncio.run(scenario())

    assert state.channel == "production"
    assert state.allow_set is False


def test_get_channel_falls_back_to_local_then_default(data_dir):
    from livebundle.channels import ChannelClient

    async def scenario():
        client = await _client(data_dir, default_channel="stable")
        with mock.patch.object(ChannelClient, "_request", new=_unreachable):
            default_state = await client.get_channel()
        with mock.patch.object(ChannelClient, "_request", new=_serve({"status": "ok"})):
            await client.set_channel("beta")
        with mock.patch.object(ChannelClient, "_request", new=_unreachable):
            local_state = await client.get_channel()
        return default_state, local_state

    default_state, local_state = asyncio.run(scenario())

    assert default_state.status == "ok"
    assert default_state.channel == "stable"
    assert local_state.channel == "beta"


def test_list_channels(data_dir):
    from livebundle.channels import ChannelClient

    body = {
        "channels": [
            {"id": "1", "name": "beta", "public": True, "allow_self_set": True},
            {"id": "2", "name": "internal", "allow_set": False},
            "garbage",
        ]
    }

    async def scenario():
        client = await _client(data_dir)
        with mock.patch.object(ChannelClient, "_request", new=_serve(body)):
            listed = await client.list_channels()
        with mock.patch.object(ChannelClient, "_request", new=_serve({"channels": "none"})):
            malformed = await client.list_channels()
        with mock.patch.object(ChannelClient, "_request", new=_unreachable):
            offline = await client.list_channels()
        return listed, malformed, offline

    listed, malformed, offline = asyncio.run(scenario())

    assert [c.name for c in listed.channels] == ["beta", "internal"]
    assert listed.channels[0].public is True
    assert listed.channels[1].allow_self_set is False
    assert malformed.channels == []
    assert offline.channels == []


# =============================================================================
# WIRE
# =============================================================================

def test_request_sends_identification_headers(data_dir):
    session_cls, session = _fake_session({"status": "ok", "channel": "beta"})

    async def scenario():
        client = await _client(data_dir, custom_id=lambda: "user-42")
        with mock.patch("aiohttp.ClientSession", session_cls):
            state = await client.get_channel()
        return client, state

    client, state = asyncio.run(scenario())

    assert state.channel == "beta"
    method, url = session.request.call_args.args
    headers = session.request.call_args.kwargs["headers"]
    assert (method, url) == ("GET", CHANNEL_URL)
    assert headers["cap_app_id"] == "com.example.app"
    assert headers["cap_device_id"] == client.storage.device_id
    assert headers["cap_custom_id"] == "user-42"
    assert "cap_channel" not in headers


def test_non_object_response_uses_local_state(data_dir):
    session_cls, _ = _fake_session(["not", "an", "object"])

    async def scenario():
        client = await _client(data_dir, default_channel="stable")
        with mock.patch("aiohttp.ClientSession", session_cls):
            return await client.get_channel()

    state = asyncio.run(scenario())

    assert state.channel == "stable"


def test_request_headers_optional_fields():
    from livebundle.channels import request_headers

    bare = request_headers("app", "device", "1.4.0")
    full = request_headers("app", "device", "1.4.0", custom_id="c", channel="beta")

    assert "cap_custom_id" not in bare
    assert "cap_channel" not in bare
    assert bare["cap_platform"] == "python"
    assert full["cap_custom_id"] == "c"
    assert full["cap_channel"] == "beta"
