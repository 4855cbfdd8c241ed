# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Data Models

Records persisted in the storage document: bundles, the manifest that
points at them, and the delay conditions gating activation.

On-disk field names are camelCase so documents written by older
releases keep loading.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

# =============================================================================
# CONSTANTS
# =============================================================================

# Sentinel id of the bundle shipped inside the application
BUILTIN_BUNDLE_ID = "builtin"

BUNDLES_DIR = "bundles"
STORAGE_FILE = "livebundle-storage.json"

# Entry point inside every bundle directory
BUNDLE_ENTRY_POINT = ("www", "index.html")


def is_valid_bundle_id(bundle_id: str) -> bool:
    """True if the id can name a directory directly under the bundles dir."""
    if not bundle_id or bundle_id in (".", ".."):
        return False
    return "/" not in bundle_id and "\\" not in bundle_id


class BundleStatus(str, Enum):
    """Lifecycle status of a bundle."""
    PENDING = "pending"
    DOWNLOADING = "downloading"
    SUCCESS = "success"
    ERROR = "error"


class DelayConditionKind(str, Enum):
    """Kinds of condition that can hold back a queued activation."""
    BACKGROUND = "background"
    KILL = "kill"
    DATE = "date"
    NATIVE_VERSION = "nativeVersion"


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class BundleInfo:
    """A versioned content package."""
    id: str
    version: str
    downloaded: str = ""  # ISO timestamp of download, empty for builtin
    checksum: str = ""
    status: BundleStatus = BundleStatus.PENDING

    @property
    def is_builtin(self) -> bool:
        return self.id == BUILTIN_BUNDLE_ID

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {
            "id": self.id,
            "version": self.version,
            "downloaded": self.downloaded,
            "checksum": self.checksum,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BundleInfo":
        return cls(
            id=str(data["id"]),
            version=str(data.get("version", "")),
            downloaded=str(data.get("downloaded") or ""),
            checksum=str(data.get("checksum") or ""),
            status=BundleStatus(data.get("status", BundleStatus.PENDING.value)),
        )


@dataclass
class DelayCondition:
    """A single gating condition; `value` meaning depends on `kind`."""
    kind: DelayConditionKind
    value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"kind": self.kind.value}
        if self.value is not None:
            d["value"] = self.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DelayCondition":
        value = data.get("value")
        return cls(
            kind=DelayConditionKind(data["kind"]),
            value=None if value is None else str(value),
        )


@dataclass
class FailedUpdate:
    """The most recent bundle that failed to report readiness."""
    bundle: BundleInfo

    def to_dict(self) -> Dict[str, Any]:
        return {"bundle": self.bundle.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailedUpdate":
        return cls(bundle=BundleInfo.from_dict(data["bundle"]))


@dataclass
class Manifest:
    """Durable root record of all known bundles and the pointers into them."""
    bundles: Dict[str, BundleInfo] = field(default_factory=dict)
    current_bundle_id: str = BUILTIN_BUNDLE_ID
    next_bundle_id: Optional[str] = None
    last_successful_bundle_id: Optional[str] = None
    failed_update: Optional[FailedUpdate] = None
    delay_conditions: List[DelayCondition] = field(default_factory=list)
    custom_id: Optional[str] = None
    channel: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundles": {bid: b.to_dict() for bid, b in self.bundles.items()},
            "currentBundleId": self.current_bundle_id,
            "nextBundleId": self.next_bundle_id,
            "lastSuccessfulBundleId": self.last_successful_bundle_id,
            "failedUpdate": self.failed_update.to_dict() if self.failed_update else None,
            "delayConditions": [c.to_dict() for c in self.delay_conditions],
            "customId": self.custom_id,
            "channel": self.channel,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        bundles = {
            bid: BundleInfo.from_dict(b)
            for bid, b in (data.get("bundles") or {}).items()
            if bid != BUILTIN_BUNDLE_ID and is_valid_bundle_id(bid)
        }
        failed = data.get("failedUpdate")
        return cls(
            bundles=bundles,
            current_bundle_id=data.get("currentBundleId") or BUILTIN_BUNDLE_ID,
            next_bundle_id=data.get("nextBundleId"),
            last_successful_bundle_id=data.get("lastSuccessfulBundleId"),
            failed_update=FailedUpdate.from_dict(failed) if failed else None,
            delay_conditions=[
                DelayCondition.from_dict(c) for c in data.get("delayConditions") or []
            ],
            custom_id=data.get("customId"),
            channel=data.get("channel"),
        )


@dataclass
class StorageData:
    """
    The whole persisted document.

    Endpoint overrides are optional; None means "use the configured default".
    """
    device_id: str
    manifest: Manifest = field(default_factory=Manifest)
    update_url: Optional[str] = None
    stats_url: Optional[str] = None
    channel_url: Optional[str] = None
    app_id: Optional[str] = None
    native_version: Optional[str] = None  # host app version at last start

    def to_dict(self, device_id: Optional[str] = None) -> Dict[str, Any]:
        """Serialize, optionally substituting the at-rest form of the device id."""
        d: Dict[str, Any] = {
            "deviceId": device_id if device_id is not None else self.device_id,
            "manifest": self.manifest.to_dict(),
        }
        for key, value in (
            ("updateUrl", self.update_url),
            ("statsUrl", self.stats_url),
            ("channelUrl", self.channel_url),
            ("appId", self.app_id),
            ("nativeVersion", self.native_version),
        ):
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageData":
        if not isinstance(data.get("deviceId"), str) or not data["deviceId"]:
            raise ValueError("Storage document has no device id")
        return cls(
            device_id=data["deviceId"],
            manifest=Manifest.from_dict(data.get("manifest") or {}),
            update_url=data.get("updateUrl"),
            stats_url=data.get("statsUrl"),
            channel_url=data.get("channelUrl"),
            app_id=data.get("appId"),
            native_version=data.get("nativeVersion"),
        )


@dataclass
class ApplyResult:
    """Outcome of applying a pending update at start-up."""
    applied: bool
    bundle_id: str
