# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The LiveBundle Authors

"""
LiveBundle Delay Gate Tests

Run with: pytest tests/test_delay.py -v
"""

import asyncio


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _gate(data_dir, app_version="1.0.0", clock=None):
    from livebundle.delay import DelayGate
    from livebundle.storage import ManifestStore

    handle = asyncio.run(ManifestStore(data_dir=data_dir, use_secure_storage=False).open())
    return DelayGate(handle, app_version, clock=clock or Clock())


def _cond(kind, value=None):
    from livebundle.models import DelayCondition, DelayConditionKind

    return DelayCondition(kind=DelayConditionKind(kind), value=value)


def test_no_conditions_is_satisfied(data_dir):
    gate = _gate(data_dir)

    asyncio.run(gate.set_multi_delay([]))

    assert gate.are_conditions_satisfied()


def test_date_and_native_version(data_dir):
    conditions = [_cond("date", "2020-01-01T00:00:00Z"), _cond("nativeVersion", "1.0.0")]

    gate = _gate(data_dir, app_version="1.0.0")
    asyncio.run(gate.set_multi_delay(conditions))
    assert gate.are_conditions_satisfied()

    gate.app_version = "0.9.0"
    assert not gate.are_conditions_satisfied()


def test_future_date_blocks(data_dir):
    gate = _gate(data_dir)
    asyncio.run(gate.set_multi_delay([_cond("date", "2999-01-01T00:00:00Z")]))

    assert not gate.are_conditions_satisfied()


def test_background_duration(data_dir):
    clock = Clock()
    gate = _gate(data_dir, clock=clock)
    asyncio.run(gate.set_multi_delay([_cond("background", "5000")]))

    assert not gate.are_conditions_satisfied()

    gate.on_background()
    clock.now += 4
    assert not gate.are_conditions_satisfied()

    clock.now += 1
    assert gate.are_conditions_satisfied()

    gate.on_foreground()
    assert not gate.are_conditions_satisfied()


def test_background_without_duration(data_dir):
    gate = _gate(data_dir)
    asyncio.run(gate.set_multi_delay([_cond("background")]))

    gate.on_background()

    assert gate.are_conditions_satisfied()


def test_kill_requires_restart(data_dir):
    gate = _gate(data_dir)
    asyncio.run(gate.set_multi_delay([_cond("kill")]))

    assert not gate.are_conditions_satisfied()

    # A fresh process sees the persisted kill condition
    restarted = _gate(data_dir)
    restarted.on_app_start()
    assert restarted.are_conditions_satisfied()

    restarted.reset_kill_state()
    assert not restarted.are_conditions_satisfied()


def test_cancel_delay_persists(data_dir):
    gate = _gate(data_dir)
    asyncio.run(gate.set_multi_delay([_cond("kill")]))
    asyncio.run(gate.cancel_delay())

    assert _gate(data_dir).get_delay_conditions() == []


def test_compare_versions():
    from livebundle.delay import compare_versions

    assert compare_versions("1.0.0", "1.0") == 0
    assert compare_versions("1.2.0", "1.10.0") == -1
    assert compare_versions("2.0", "1.9.9") == 1
    # Unparsable components count as 0
    assert compare_versions("1.2.3-beta", "1.2.3") == -1
    assert compare_versions("1.x", "1.0") == 0


def test_parse_date():
    from datetime import timezone

    from livebundle.delay import parse_date

    assert parse_date("2024-05-01T12:00:00Z").tzinfo == timezone.utc
    assert parse_date("2024-05-01T12:00:00").tzinfo == timezone.utc
    assert parse_date("yesterday") is None
