# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Main Application

FastAPI application exposing the updater call contract to the sandboxed
application process, plus a polling endpoint for updater events.
"""

import itertools
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Deque, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from . import __version__
from .config import config, setup_logging
from .errors import (
    BundleNotFoundError,
    DownloadError,
    IntegrityError,
    InvalidStateError,
    LiveBundleError,
    PermissionDeniedError,
    StorageIOError,
)
from .events import EventKind, UpdaterEvent
from .fetcher import DownloadOptions, ManifestEntry
from .models import BundleInfo, DelayCondition
from .schemas import (
    AppIdResponse,
    AvailableResponse,
    BundleIdRequest,
    BundleListResponse,
    BundleModel,
    BundleResponse,
    ChannelInfoModel,
    ChannelResponse,
    CurrentResponse,
    DelayConditionModel,
    DelayConditionsResponse,
    DeviceIdResponse,
    DownloadRequest,
    EnabledResponse,
    GetChannelResponse,
    GetLatestRequest,
    HealthResponse,
    LatestVersionResponse,
    ListChannelsResponse,
    ListRequest,
    MultiDelayRequest,
    OptionalBundleResponse,
    ResetRequest,
    SetAppIdRequest,
    SetChannelRequest,
    SetCustomIdRequest,
    UnsetChannelRequest,
    UrlRequest,
    VersionResponse,
)
from .updater import BundleUpdater, get_updater, init_updater, shutdown_updater

setup_logging(config.logging)
logger = logging.getLogger(__name__)

# Events kept for polling clients
EVENT_BACKLOG = 200

# Exception type -> HTTP status
ERROR_STATUS: List[Tuple[type, int, str]] = [
    (BundleNotFoundError, 404, "not_found"),
    (InvalidStateError, 409, "invalid_state"),
    (IntegrityError, 422, "integrity_failure"),
    (PermissionDeniedError, 403, "permission_denied"),
    (DownloadError, 502, "download_failed"),
    (StorageIOError, 500, "io_failure"),
]


class EventLog:
    """Buffers updater events with sequence numbers for polling clients."""

    def __init__(self, maxlen: int = EVENT_BACKLOG):
        self._events: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self._seq = itertools.count(1)

    def attach(self, updater: BundleUpdater) -> None:
        for kind in EventKind:
            updater.add_listener(kind, lambda event, kind=kind: self.record(kind, event))

    def record(self, kind: EventKind, event: UpdaterEvent) -> None:
        self._events.append({"seq": next(self._seq), "event": kind.value, "data": event.to_dict()})

    def since(self, after: int = 0) -> List[Dict[str, Any]]:
        return [e for e in self._events if e["seq"] > after]


event_log: Optional[EventLog] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown."""
    global event_log

    logger.info("LiveBundle starting up...")

    updater = await init_updater(config)
    event_log = EventLog()
    event_log.attach(updater)

    logger.info(
        "LiveBundle ready on http://%s:%d",
        config.server.host,
        config.server.port
    )

    yield  # Application runs here

    logger.info("LiveBundle shutting down...")
    await shutdown_updater()
    event_log = None
    logger.info("LiveBundle shutdown complete")


# =============================================================================
# APPLICATION SETUP
# =============================================================================

app = FastAPI(
    title="LiveBundle",
    description="Over-the-air bundle updater",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

async def verify_api_key(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
) -> None:
    """Require the configured API key, if there is one."""
    if not config.server.api_key:
        return

    api_key = None
    if authorization and authorization.startswith("Bearer "):
        api_key = authorization[7:]
    elif x_api_key:
        api_key = x_api_key

    if api_key != config.server.api_key:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Use 'Authorization: Bearer <key>' or 'X-Api-Key' header."
        )


def require_updater() -> BundleUpdater:
    updater = get_updater()
    if updater is None:
        raise HTTPException(status_code=503, detail="Updater is not initialized")
    return updater


def _bundle(bundle: BundleInfo) -> BundleModel:
    return BundleModel(**bundle.to_dict())


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(LiveBundleError)
async def livebundle_exception_handler(request: Request, exc: LiveBundleError):
    """Map updater errors onto HTTP statuses."""
    status_code, error_type = 500, "internal_error"
    for exc_type, code, name in ERROR_STATUS:
        if isinstance(exc, exc_type):
            status_code, error_type = code, name
            break
    if status_code >= 500:
        logger.error("%s: %s", error_type, exc)
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": str(exc), "type": error_type, "code": str(status_code)}},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"message": exc.detail, "type": "api_error", "code": str(exc.status_code)}},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception("Unexpected error: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"error": {"message": "Internal server error", "type": "internal_error", "code": "500"}},
    )


# =============================================================================
# HEALTH
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Service status and the bundle currently running."""
    updater = get_updater()
    if updater is None or updater.bundles is None:
        return HealthResponse(status="starting", version=__version__)

    current = await updater.bundles.current()
    return HealthResponse(
        status="ok",
        current_bundle=current.id,
        watchdog=updater.watchdog.state.value,
        version=__version__,
    )


# =============================================================================
# CORE UPDATE CALLS
# =============================================================================

router_deps = [Depends(verify_api_key)]


@app.post("/v1/notifyAppReady", response_model=BundleResponse, dependencies=router_deps)
async def notify_app_ready(updater: BundleUpdater = Depends(require_updater)):
    bundle = await updater.notify_app_ready()
    return BundleResponse(bundle=_bundle(bundle))


@app.post("/v1/download", response_model=BundleModel, dependencies=router_deps)
async def download(request: DownloadRequest, updater: BundleUpdater = Depends(require_updater)):
    if not request.url and not request.manifest:
        raise HTTPException(status_code=400, detail="Either url or manifest is required")
    options = DownloadOptions(
        url=request.url,
        version=request.version,
        session_key=request.session_key,
        checksum=request.checksum,
        manifest=[
            ManifestEntry(file_name=m.file_name, file_hash=m.file_hash, download_url=m.download_url)
            for m in request.manifest or []
        ],
    )
    return _bundle(await updater.download(options))


@app.post("/v1/next", response_model=BundleModel, dependencies=router_deps)
async def next_bundle(request: BundleIdRequest, updater: BundleUpdater = Depends(require_updater)):
    return _bundle(await updater.next(request.id))


@app.post("/v1/set", response_model=BundleModel, dependencies=router_deps)
async def set_bundle(request: BundleIdRequest, updater: BundleUpdater = Depends(require_updater)):
    return _bundle(await updater.set(request.id))


@app.post("/v1/reload", dependencies=router_deps)
async def reload(updater: BundleUpdater = Depends(require_updater)):
    await updater.reload()
    return {}


@app.post("/v1/delete", dependencies=router_deps)
async def delete_bundle(request: BundleIdRequest, updater: BundleUpdater = Depends(require_updater)):
    await updater.delete(request.id)
    return {}


@app.post("/v1/setBundleError", response_model=BundleModel, dependencies=router_deps)
async def set_bundle_error(request: BundleIdRequest, updater: BundleUpdater = Depends(require_updater)):
    return _bundle(await updater.set_bundle_error(request.id))


# =============================================================================
# BUNDLE INFORMATION
# =============================================================================

@app.get("/v1/current", response_model=CurrentResponse, dependencies=router_deps)
async def current(updater: BundleUpdater = Depends(require_updater)):
    result = await updater.current()
    return CurrentResponse(bundle=_bundle(result.bundle), native=result.native)


@app.post("/v1/list", response_model=BundleListResponse, dependencies=router_deps)
async def list_bundles(request: Optional[ListRequest] = None, updater: BundleUpdater = Depends(require_updater)):
    raw = request.raw if request else False
    return BundleListResponse(bundles=[_bundle(b) for b in await updater.list(raw=raw)])


@app.get("/v1/getNextBundle", response_model=OptionalBundleResponse, dependencies=router_deps)
async def get_next_bundle(updater: BundleUpdater = Depends(require_updater)):
    bundle = await updater.get_next_bundle()
    return OptionalBundleResponse(bundle=_bundle(bundle) if bundle else None)


@app.get("/v1/getFailedUpdate", response_model=OptionalBundleResponse, dependencies=router_deps)
async def get_failed_update(updater: BundleUpdater = Depends(require_updater)):
    failed = await updater.get_failed_update()
    return OptionalBundleResponse(bundle=_bundle(failed.bundle) if failed else None)


@app.post("/v1/reset", response_model=BundleModel, dependencies=router_deps)
async def reset(request: Optional[ResetRequest] = None, updater: BundleUpdater = Depends(require_updater)):
    to_last = request.to_last_successful if request else False
    return _bundle(await updater.reset(to_last_successful=to_last))


# =============================================================================
# UPDATE CHECKS
# =============================================================================

@app.post("/v1/getLatest", response_model=LatestVersionResponse, dependencies=router_deps)
async def get_latest(request: Optional[GetLatestRequest] = None, updater: BundleUpdater = Depends(require_updater)):
    latest = await updater.get_latest(channel=request.channel if request else None)
    return LatestVersionResponse(**latest.to_dict())


@app.get("/v1/getBuiltinVersion", response_model=VersionResponse, dependencies=router_deps)
async def get_builtin_version(updater: BundleUpdater = Depends(require_updater)):
    return VersionResponse(version=updater.get_builtin_version())


# =============================================================================
# DELAY CONDITIONS
# =============================================================================

@app.post("/v1/setMultiDelay", response_model=DelayConditionsResponse, dependencies=router_deps)
async def set_multi_delay(request: MultiDelayRequest, updater: BundleUpdater = Depends(require_updater)):
    conditions = [DelayCondition(kind=c.kind, value=c.value) for c in request.delay_conditions]
    await updater.set_multi_delay(conditions)
    return DelayConditionsResponse(delay_conditions=request.delay_conditions)


@app.post("/v1/cancelDelay", dependencies=router_deps)
async def cancel_delay(updater: BundleUpdater = Depends(require_updater)):
    await updater.cancel_delay()
    return {}


@app.get("/v1/getDelayConditions", response_model=DelayConditionsResponse, dependencies=router_deps)
async def get_delay_conditions(updater: BundleUpdater = Depends(require_updater)):
    return DelayConditionsResponse(delay_conditions=[
        DelayConditionModel(kind=c.kind, value=c.value)
        for c in updater.delay.get_delay_conditions()
    ])


@app.post("/v1/appState/{state}", dependencies=router_deps)
async def app_state(state: str, updater: BundleUpdater = Depends(require_updater)):
    """Host lifecycle notifications: background or foreground."""
    if state == "background":
        await updater.on_background()
    elif state == "foreground":
        await updater.on_foreground()
    else:
        raise HTTPException(status_code=400, detail=f"Unknown app state: {state}")
    return {}


# =============================================================================
# CHANNELS
# =============================================================================

@app.post("/v1/setChannel", response_model=ChannelResponse, dependencies=router_deps)
async def set_channel(request: SetChannelRequest, updater: BundleUpdater = Depends(require_updater)):
    result = await updater.set_channel(request.channel, trigger_auto_update=request.trigger_auto_update)
    return ChannelResponse(status=result.status, error=result.error, message=result.message)


@app.post("/v1/unsetChannel", dependencies=router_deps)
async def unset_channel(request: Optional[UnsetChannelRequest] = None, updater: BundleUpdater = Depends(require_updater)):
    await updater.unset_channel(trigger_auto_update=request.trigger_auto_update if request else False)
    return {}


@app.get("/v1/getChannel", response_model=GetChannelResponse, dependencies=router_deps)
async def get_channel(updater: BundleUpdater = Depends(require_updater)):
    state = await updater.get_channel()
    return GetChannelResponse(
        status=state.status,
        channel=state.channel,
        allow_set=state.allow_set,
        error=state.error,
        message=state.message,
    )


@app.get("/v1/listChannels", response_model=ListChannelsResponse, dependencies=router_deps)
async def list_channels(updater: BundleUpdater = Depends(require_updater)):
    result = await updater.list_channels()
    return ListChannelsResponse(channels=[
        ChannelInfoModel(id=c.id, name=c.name, public=c.public, allow_self_set=c.allow_self_set)
        for c in result.channels
    ])


# =============================================================================
# DEVICE / PLUGIN INFO
# =============================================================================

@app.get("/v1/getDeviceId", response_model=DeviceIdResponse, dependencies=router_deps)
async def get_device_id(updater: BundleUpdater = Depends(require_updater)):
    return DeviceIdResponse(device_id=updater.get_device_id())


@app.post("/v1/setCustomId", dependencies=router_deps)
async def set_custom_id(request: SetCustomIdRequest, updater: BundleUpdater = Depends(require_updater)):
    await updater.set_custom_id(request.custom_id)
    return {}


@app.get("/v1/getPluginVersion", response_model=VersionResponse, dependencies=router_deps)
async def get_plugin_version(updater: BundleUpdater = Depends(require_updater)):
    return VersionResponse(version=updater.get_plugin_version())


@app.get("/v1/isAutoUpdateEnabled", response_model=EnabledResponse, dependencies=router_deps)
async def is_auto_update_enabled(updater: BundleUpdater = Depends(require_updater)):
    return EnabledResponse(enabled=updater.is_auto_update_enabled())


@app.get("/v1/isAutoUpdateAvailable", response_model=AvailableResponse, dependencies=router_deps)
async def is_auto_update_available(updater: BundleUpdater = Depends(require_updater)):
    return AvailableResponse(available=updater.is_auto_update_available())


# =============================================================================
# DYNAMIC CONFIG
# =============================================================================

@app.post("/v1/setUpdateUrl", dependencies=router_deps)
async def set_update_url(request: UrlRequest, updater: BundleUpdater = Depends(require_updater)):
    await updater.set_update_url(request.url)
    return {}


@app.post("/v1/setStatsUrl", dependencies=router_deps)
async def set_stats_url(request: UrlRequest, updater: BundleUpdater = Depends(require_updater)):
    await updater.set_stats_url(request.url)
    return {}


@app.post("/v1/setChannelUrl", dependencies=router_deps)
async def set_channel_url(request: UrlRequest, updater: BundleUpdater = Depends(require_updater)):
    await updater.set_channel_url(request.url)
    return {}


@app.post("/v1/setAppId", dependencies=router_deps)
async def set_app_id(request: SetAppIdRequest, updater: BundleUpdater = Depends(require_updater)):
    await updater.set_app_id(request.app_id)
    return {}


@app.get("/v1/getAppId", response_model=AppIdResponse, dependencies=router_deps)
async def get_app_id(updater: BundleUpdater = Depends(require_updater)):
    return AppIdResponse(app_id=updater.get_app_id())


# =============================================================================
# EVENTS
# =============================================================================

@app.get("/v1/events", dependencies=router_deps)
async def poll_events(after: int = 0):
    """Events recorded after the given sequence number."""
    if event_log is None:
        raise HTTPException(status_code=503, detail="Updater is not initialized")
    return {"events": event_log.since(after)}


@app.post("/v1/removeAllListeners", dependencies=router_deps)
async def remove_all_listeners(updater: BundleUpdater = Depends(require_updater)):
    updater.remove_all_listeners()
    # The event log is itself a listener
    if event_log is not None:
        event_log.attach(updater)
    return {}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "livebundle.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=False,
        log_level=config.logging.level.lower(),
    )
