# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Pydantic Schemas

Request/response models for the local call surface. Field names on the
wire are camelCase to match the updater call contract.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import DelayConditionKind


class WireModel(BaseModel):
    """Accepts both snake_case and camelCase field names."""
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ManifestEntryModel(WireModel):
    file_name: str = Field(..., description="Path of the file inside the bundle")
    file_hash: str = Field(default="", description="SHA-256 of the file content")
    download_url: str = Field(..., description="Where to fetch the file")


class DownloadRequest(WireModel):
    url: str = Field(default="", description="Bundle archive URL")
    version: str = Field(..., description="Version of the bundle")
    session_key: Optional[str] = Field(default=None, alias="sessionKey", description="Encrypted session key")
    checksum: Optional[str] = Field(default=None, description="Archive checksum (encrypted if sessionKey is set)")
    manifest: Optional[List[ManifestEntryModel]] = Field(default=None, description="Per-file delivery")


class BundleIdRequest(WireModel):
    id: str = Field(..., description="Bundle id")


class ListRequest(WireModel):
    raw: bool = Field(default=False, description="Include bundles whose files are missing")


class ResetRequest(WireModel):
    to_last_successful: bool = Field(default=False, alias="toLastSuccessful")


class GetLatestRequest(WireModel):
    channel: Optional[str] = Field(default=None, description="Channel to check instead of the device's")


class DelayConditionModel(WireModel):
    kind: DelayConditionKind
    value: Optional[str] = None


class MultiDelayRequest(WireModel):
    delay_conditions: List[DelayConditionModel] = Field(default_factory=list, alias="delayConditions")


class SetChannelRequest(WireModel):
    channel: str
    trigger_auto_update: bool = Field(default=False, alias="triggerAutoUpdate")


class UnsetChannelRequest(WireModel):
    trigger_auto_update: bool = Field(default=False, alias="triggerAutoUpdate")


class SetCustomIdRequest(WireModel):
    custom_id: str = Field(..., alias="customId")


class UrlRequest(WireModel):
    url: str


class SetAppIdRequest(WireModel):
    app_id: str = Field(..., alias="appId")


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class BundleModel(WireModel):
    id: str
    version: str
    downloaded: str = ""
    checksum: str = ""
    status: str


class BundleResponse(WireModel):
    bundle: BundleModel


class OptionalBundleResponse(WireModel):
    bundle: Optional[BundleModel] = None


class CurrentResponse(WireModel):
    bundle: BundleModel
    native: str


class BundleListResponse(WireModel):
    bundles: List[BundleModel]


class LatestVersionResponse(WireModel):
    version: str
    url: Optional[str] = None
    checksum: Optional[str] = None
    breaking: bool = False
    major: bool = False
    message: Optional[str] = None
    session_key: Optional[str] = Field(default=None, alias="sessionKey")
    error: Optional[str] = None
    old: Optional[str] = None
    manifest: List[ManifestEntryModel] = Field(default_factory=list)


class VersionResponse(WireModel):
    version: str


class DelayConditionsResponse(WireModel):
    delay_conditions: List[DelayConditionModel] = Field(alias="delayConditions")


class ChannelResponse(WireModel):
    status: str
    error: Optional[str] = None
    message: Optional[str] = None


class GetChannelResponse(WireModel):
    status: str
    channel: Optional[str] = None
    allow_set: bool = Field(default=True, alias="allowSet")
    error: Optional[str] = None
    message: Optional[str] = None


class ChannelInfoModel(WireModel):
    id: str
    name: str
    public: bool = False
    allow_self_set: bool = True


class ListChannelsResponse(WireModel):
    channels: List[ChannelInfoModel]


class DeviceIdResponse(WireModel):
    device_id: str = Field(alias="deviceId")


class AppIdResponse(WireModel):
    app_id: str = Field(alias="appId")


class EnabledResponse(WireModel):
    enabled: bool


class AvailableResponse(WireModel):
    available: bool


class HealthResponse(WireModel):
    """Health check response."""
    status: str = Field(..., description="Service status: ok, starting")
    current_bundle: Optional[str] = Field(default=None, alias="currentBundle")
    watchdog: Optional[str] = Field(default=None, description="Readiness watchdog state")
    version: str = Field(..., description="LiveBundle version")


class ErrorDetail(BaseModel):
    message: str
    type: str
    code: str


class ErrorResponse(BaseModel):
    error: ErrorDetail
