# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The LiveBundle Authors

"""
LiveBundle Event Bus Tests

Run with: pytest tests/test_events.py -v
"""


def _bundle():
    from livebundle.models import BundleInfo

    return BundleInfo(id="b1", version="2.0.0")


def test_breaking_reaches_major_listeners():
    from livebundle.events import BreakingAvailableEvent, EventBus

    bus = EventBus()
    breaking, major = [], []
    bus.add_listener("breakingAvailable", breaking.append)
    bus.add_listener("majorAvailable", major.append)

    bus.emit(BreakingAvailableEvent(version="2.0.0"))

    assert len(breaking) == 1
    assert len(major) == 1
    assert major[0].to_dict() == {"version": "2.0.0"}


def test_listener_errors_are_isolated():
    from livebundle.events import EventBus, EventKind, UpdateAvailableEvent

    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    bus.add_listener(EventKind.UPDATE_AVAILABLE, broken)
    bus.add_listener(EventKind.UPDATE_AVAILABLE, received.append)

    bus.emit(UpdateAvailableEvent(bundle=_bundle()))

    assert len(received) == 1


def test_handle_removes_listener():
    from livebundle.events import AppReloadedEvent, EventBus

    bus = EventBus()
    received = []
    handle = bus.add_listener("appReloaded", received.append)

    handle.remove()
    handle.remove()
    bus.emit(AppReloadedEvent())

    assert received == []
    assert bus.listener_count("appReloaded") == 0


def test_remove_all_listeners():
    from livebundle.events import DownloadEvent, EventBus

    bus = EventBus()
    received = []
    bus.add_listener("download", received.append)
    bus.add_listener("appReady", received.append)

    bus.remove_all_listeners()
    bus.emit(DownloadEvent(percent=50, bundle=_bundle()))

    assert received == []
    assert bus.listener_count("download") == 0


def test_unknown_event_name_rejected():
    import pytest
    from livebundle.events import EventBus

    with pytest.raises(ValueError):
        EventBus().add_listener("somethingElse", print)


def test_payloads():
    from livebundle.events import AppReadyEvent, DownloadEvent, DownloadFailedEvent

    assert DownloadEvent(percent=10, bundle=_bundle()).to_dict()["percent"] == 10
    assert DownloadFailedEvent(version="1.2.3").to_dict() == {"version": "1.2.3"}
    assert AppReadyEvent(bundle=_bundle()).to_dict()["status"] == "OK"
