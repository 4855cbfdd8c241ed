# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The LiveBundle Authors

"""
LiveBundle Storage Tests

Manifest persistence, device id encryption and bundle directories.
Run with: pytest tests/test_storage.py -v
"""

import asyncio
import json
import uuid
from unittest import mock

import pytest

from conftest import write_bundle_dir


def _open(data_dir, **kwargs):
    from livebundle.storage import ManifestStore

    store = ManifestStore(data_dir=data_dir, **kwargs)
    return store, asyncio.run(store.open())


# =============================================================================
# DOCUMENT
# =============================================================================

def test_fresh_store_has_defaults(data_dir):
    from livebundle.models import BUILTIN_BUNDLE_ID

    store, handle = _open(data_dir)

    assert handle.manifest.current_bundle_id == BUILTIN_BUNDLE_ID
    assert handle.manifest.next_bundle_id is None
    assert handle.manifest.bundles == {}
    uuid.UUID(handle.device_id)
    assert store.bundles_path.is_dir()


def test_save_and_reopen(data_dir):
    from livebundle.models import (
        BundleInfo,
        BundleStatus,
        DelayCondition,
        DelayConditionKind,
        FailedUpdate,
    )

    _, handle = _open(data_dir)
    bundle = BundleInfo(id="b1", version="1.0.1", checksum="abc", status=BundleStatus.SUCCESS)
    handle.set_bundle(bundle)
    handle.manifest.next_bundle_id = "b1"
    handle.manifest.failed_update = FailedUpdate(bundle=BundleInfo(id="b0", version="1.0.0"))
    handle.manifest.delay_conditions = [
        DelayCondition(kind=DelayConditionKind.BACKGROUND, value="5000")
    ]
    handle.manifest.channel = "beta"
    asyncio.run(handle.save())

    _, reopened = _open(data_dir)

    assert reopened.device_id == handle.device_id
    assert reopened.get_bundle("b1") == bundle
    assert reopened.manifest.next_bundle_id == "b1"
    assert reopened.manifest.failed_update.bundle.id == "b0"
    assert reopened.manifest.delay_conditions[0].kind == DelayConditionKind.BACKGROUND
    assert reopened.manifest.delay_conditions[0].value == "5000"
    assert reopened.manifest.channel == "beta"


def test_builtin_is_never_stored(data_dir):
    from livebundle.models import BUILTIN_BUNDLE_ID, BundleInfo

    _, handle = _open(data_dir)

    with pytest.raises(ValueError):
        handle.set_bundle(BundleInfo(id=BUILTIN_BUNDLE_ID, version="1.0.0"))


def test_corrupt_document_falls_back_to_defaults(data_dir):
    from livebundle.models import BUILTIN_BUNDLE_ID, STORAGE_FILE

    (data_dir / STORAGE_FILE).write_text("{not json")

    _, handle = _open(data_dir)

    assert handle.manifest.current_bundle_id == BUILTIN_BUNDLE_ID
    assert handle.device_id


def test_save_failure_raises_storage_error(data_dir):
    from livebundle.errors import StorageIOError
    from livebundle.storage import ManifestStore

    store, handle = _open(data_dir)

    with mock.patch.object(ManifestStore, "_write", side_effect=OSError("disk full")):
        with pytest.raises(StorageIOError):
            asyncio.run(handle.save())


# =============================================================================
# DEVICE ID
# =============================================================================

def test_device_id_encrypted_at_rest(data_dir):
    from livebundle.models import STORAGE_FILE

    _, handle = _open(data_dir)
    asyncio.run(handle.save())
    first = json.loads((data_dir / STORAGE_FILE).read_text())["deviceId"]

    assert first != handle.device_id

    asyncio.run(handle.save())
    second = json.loads((data_dir / STORAGE_FILE).read_text())["deviceId"]
    assert second != first

    _, reopened = _open(data_dir)
    assert reopened.device_id == handle.device_id


def test_plaintext_device_id_is_accepted(data_dir):
    from livebundle.models import STORAGE_FILE

    (data_dir / STORAGE_FILE).write_text(json.dumps({"deviceId": "legacy-device", "manifest": {}}))

    _, handle = _open(data_dir)

    assert handle.device_id == "legacy-device"


def test_secure_storage_disabled(data_dir):
    from livebundle.models import STORAGE_FILE

    _, handle = _open(data_dir, use_secure_storage=False)
    asyncio.run(handle.save())

    stored = json.loads((data_dir / STORAGE_FILE).read_text())["deviceId"]
    assert stored == handle.device_id


# =============================================================================
# BUNDLE FILES
# =============================================================================

def test_bundle_path_rejects_traversal(data_dir):
    _, handle = _open(data_dir)

    for bad in ("", "..", "../x", "a/b"):
        with pytest.raises(ValueError):
            handle.bundle_path(bad)


def test_manifest_drops_unusable_bundle_ids():
    from livebundle.models import Manifest

    manifest = Manifest.from_dict({
        "bundles": {
            "b1": {"id": "b1", "version": "1.0.1"},
            "..": {"id": "..", "version": "1.0.1"},
            "a/b": {"id": "a/b", "version": "1.0.1"},
            "builtin": {"id": "builtin", "version": "1.0.0"},
        },
    })

    assert list(manifest.bundles) == ["b1"]


def test_orphan_cleanup(data_dir):
    from livebundle.models import BundleInfo, BundleStatus

    _, handle = _open(data_dir)
    handle.set_bundle(BundleInfo(id="kept", version="1.0.0", status=BundleStatus.SUCCESS))
    write_bundle_dir(handle.bundle_path("kept"))
    write_bundle_dir(handle.bundle_path("orphan"))

    removed = asyncio.run(handle.cleanup_orphaned_bundles_best_effort())

    assert removed == 1
    assert handle.bundle_path("kept").is_dir()
    assert not handle.bundle_path("orphan").exists()


def test_delete_bundle_files(data_dir):
    _, handle = _open(data_dir)
    write_bundle_dir(handle.bundle_path("b1"))

    assert asyncio.run(handle.bundle_exists("b1"))
    asyncio.run(handle.delete_bundle_files("b1"))
    assert not asyncio.run(handle.bundle_exists("b1"))

    # Missing directories are not an error
    asyncio.run(handle.delete_bundle_files("b1"))
