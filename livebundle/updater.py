# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Updater

Wires the manifest store, lifecycle manager, delay gate, readiness
watchdog and the HTTP collaborators into the single object the host
application talks to.

Start-up flow:
  1. Load the storage document (or create it)
  2. Drop all bundles if the host application version changed
  3. Clean up failed and orphaned bundles
  4. Apply the queued bundle if the delay gate is open
  5. Arm the readiness watchdog for a downloaded current bundle
  6. Start periodic update checks (if auto-update is on)

Auto-update flow:
  1. POST device/app context to the update URL
  2. Compare the offered version with the current bundle
  3. Download, verify and extract the offered bundle
  4. Queue it as next (or switch to it directly, per direct_update)
"""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import aiohttp

from . import __version__
from .channels import ChannelClient, ChannelListResult, ChannelResult, ChannelState
from .config import Config
from .delay import DelayGate
from .device import DeviceManager
from .errors import DownloadError, LiveBundleError, PermissionDeniedError, RollbackFailedError
from .events import (
    AppReadyEvent,
    AppReloadedEvent,
    BreakingAvailableEvent,
    DownloadCompleteEvent,
    DownloadEvent,
    DownloadFailedEvent,
    EventBus,
    EventKind,
    Listener,
    ListenerHandle,
    NoNeedUpdateEvent,
    UpdateAvailableEvent,
    UpdateFailedEvent,
)
from .fetcher import BundleFetcher, DownloadOptions, ManifestEntry
from .integrity import IntegrityVerifier, generate_bundle_id
from .lifecycle import BundleManager
from .models import BundleInfo, BundleStatus, DelayCondition, FailedUpdate
from .stats import StatsClient
from .storage import ManifestHandle, ManifestStore
from .watchdog import ReadinessWatchdog, Scheduler, WatchdogState

logger = logging.getLogger(__name__)

PLATFORM = "python"

FatalHandler = Callable[[BaseException], None]
ReloadHandler = Callable[[Path], Union[None, Awaitable[None]]]


# =============================================================================
# DATA MODELS
# =============================================================================

@dataclass
class LatestVersion:
    """Update-check response. `error` set means there is nothing to install."""
    version: str
    url: Optional[str] = None
    checksum: Optional[str] = None
    breaking: bool = False
    message: Optional[str] = None
    session_key: Optional[str] = None
    error: Optional[str] = None
    old: Optional[str] = None
    manifest: List[ManifestEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LatestVersion":
        error = data.get("error")
        return cls(
            version=str(data.get("version") or ""),
            url=data.get("url") or None,
            checksum=data.get("checksum") or None,
            # "major" is the legacy name of "breaking"
            breaking=bool(data.get("breaking") or data.get("major")),
            message=data.get("message"),
            session_key=data.get("session_key") or data.get("sessionKey") or None,
            error=None if error is None else str(error),
            old=data.get("old"),
            manifest=[
                ManifestEntry.from_dict(m)
                for m in data.get("manifest") or []
                if isinstance(m, dict)
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "url": self.url,
            "checksum": self.checksum,
            "breaking": self.breaking,
            "major": self.breaking,
            "message": self.message,
            "sessionKey": self.session_key,
            "error": self.error,
            "old": self.old,
            "manifest": [
                {"file_name": m.file_name, "file_hash": m.file_hash, "download_url": m.download_url}
                for m in self.manifest
            ],
        }

    def to_download_options(self) -> DownloadOptions:
        return DownloadOptions(
            url=self.url or "",
            version=self.version,
            session_key=self.session_key,
            checksum=self.checksum,
            manifest=list(self.manifest),
        )


@dataclass
class CurrentBundle:
    """The active bundle plus the host application version."""
    bundle: BundleInfo
    native: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _terminate(exc: BaseException) -> None:
    # The service manager restarts us if configured with Restart=always
    logger.critical("Unrecoverable updater failure, terminating: %s", exc)
    os.kill(os.getpid(), signal.SIGTERM)


# =============================================================================
# UPDATER
# =============================================================================

class BundleUpdater:
    """
    Facade over the bundle lifecycle.

    Usage:
        updater = BundleUpdater(config)
        await updater.initialize()
        await updater.notify_app_ready()
    """

    def __init__(
        self,
        config: Config,
        fatal_handler: Optional[FatalHandler] = None,
        reload_handler: Optional[ReloadHandler] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            config: Loaded configuration.
            fatal_handler: Called when a rollback cannot be persisted.
                           Defaults to sending SIGTERM to this process.
            reload_handler: Called with the entry point path whenever the
                            host should (re)load the current bundle.
            scheduler: Timer factory for the readiness watchdog.
            clock: Wall clock for the delay gate.
        """
        self.config = config
        self.settings = config.updater
        self._fatal_handler = fatal_handler or _terminate
        self._reload_handler = reload_handler
        self._scheduler = scheduler
        self._clock = clock

        self.events = EventBus()
        self.verifier = IntegrityVerifier(self.settings.public_key)
        self.store = ManifestStore(
            config.storage.data_directory,
            use_secure_storage=config.storage.secure_storage,
        )

        self.update_url = config.endpoints.update_url
        self.stats_url = config.endpoints.stats_url
        self.channel_url = config.endpoints.channel_url
        self.app_id = self.settings.app_id

        # Set by initialize()
        self.storage: Optional[ManifestHandle] = None
        self.bundles: Optional[BundleManager] = None
        self.fetcher: Optional[BundleFetcher] = None
        self.delay: Optional[DelayGate] = None
        self.device: Optional[DeviceManager] = None
        self.channels: Optional[ChannelClient] = None
        self.stats: Optional[StatsClient] = None
        self.watchdog: Optional[ReadinessWatchdog] = None

        self._check_task: Optional[asyncio.Task] = None
        self._triggered_checks: Set[asyncio.Task] = set()
        self._check_lock = asyncio.Lock()

    # =========================================================================
    # STARTUP / SHUTDOWN
    # =========================================================================

    async def initialize(self) -> None:
        """Load state, settle pending work and arm the watchdog."""
        storage = await self.store.open()
        self.storage = storage
        settings = self.settings

        if settings.persist_modify_url:
            self.update_url = storage.data.update_url or self.update_url
            self.stats_url = storage.data.stats_url if storage.data.stats_url is not None else self.stats_url
            self.channel_url = storage.data.channel_url or self.channel_url
            self.app_id = storage.data.app_id or self.app_id

        self.fetcher = BundleFetcher(storage, self.verifier)
        self.bundles = BundleManager(
            storage,
            self.fetcher.verify_integrity,
            builtin_version=settings.version,
            builtin_path=self.config.storage.builtin_path,
            auto_delete_failed=settings.auto_delete_failed,
            auto_delete_previous=settings.auto_delete_previous,
            allow_manual_bundle_error=settings.allow_manual_bundle_error,
        )
        self.delay = DelayGate(storage, settings.version, clock=self._clock)
        self.device = DeviceManager(storage, settings.persist_custom_id)
        self.channels = ChannelClient(
            storage,
            self.channel_url,
            self.app_id,
            __version__,
            custom_id=self.device.get_custom_id,
            default_channel=settings.default_channel,
            timeout=settings.response_timeout,
        )
        self.stats = StatsClient(
            self.stats_url,
            self.app_id,
            storage.device_id,
            __version__,
            custom_id=self.device.get_custom_id,
            channel=self.channels.effective_channel,
            timeout=settings.response_timeout,
        )
        self.watchdog = ReadinessWatchdog(
            settings.app_ready_timeout,
            on_confirmed=self._on_ready_confirmed,
            on_expired=self._on_ready_expired,
            scheduler=self._scheduler,
        )

        await self._check_native_version()

        self.delay.on_app_start()
        await self.bundles.cleanup()
        await self._apply_pending_if_allowed()

        current = await self.bundles.current()
        if not current.is_builtin:
            self.watchdog.arm(current.id)

        logger.info(
            "Updater initialized (bundle %s, version %s, native %s)",
            current.id,
            current.version,
            settings.version,
        )

    async def start(self) -> None:
        """Begin automatic update checking if enabled."""
        if self.settings.auto_update and self.update_url:
            self._check_task = asyncio.create_task(self._periodic_check())
            logger.info(
                "Auto-update started (check interval: %ss)",
                self.settings.period_check_delay or "launch only",
            )
        else:
            logger.info("Auto-update disabled")

    async def stop(self) -> None:
        if self._check_task:
            self._check_task.cancel()
            try:
                await self._check_task
            except asyncio.CancelledError:
                pass
            self._check_task = None
        for task in list(self._triggered_checks):
            task.cancel()
        if self._triggered_checks:
            await asyncio.gather(*self._triggered_checks, return_exceptions=True)
        if self.watchdog is not None:
            self.watchdog.cancel()
        logger.info("Updater stopped")

    async def _check_native_version(self) -> None:
        storage = self.storage
        previous = storage.data.native_version
        if previous == self.settings.version:
            return
        if previous is not None and self.settings.reset_when_update:
            logger.info(
                "Host application changed from %s to %s, dropping downloaded bundles",
                previous,
                self.settings.version,
            )
            await self.bundles.purge()
        async with storage.lock:
            storage.data.native_version = self.settings.version
            await storage.save()

    async def _apply_pending_if_allowed(self) -> bool:
        next_bundle = await self.bundles.get_next_bundle()
        if next_bundle is None:
            return False
        if not self.delay.are_conditions_satisfied():
            logger.info("Bundle %s is queued but delay conditions are not met", next_bundle.id)
            return False

        result = await self.bundles.apply_pending_update()
        if result.applied:
            await self.delay.cancel_delay()
            self.delay.reset_kill_state()
        return result.applied

    # =========================================================================
    # READINESS
    # =========================================================================

    async def notify_app_ready(self) -> BundleInfo:
        """Positive readiness signal from the host application."""
        confirmed = await self.watchdog.confirm()
        if not confirmed and self.watchdog.state != WatchdogState.EXPIRED:
            # No watchdog running (builtin, or already confirmed)
            await self.bundles.mark_bundle_successful()
        bundle = await self.bundles.current()
        self.events.emit(AppReadyEvent(bundle=bundle))
        return bundle

    async def _on_ready_confirmed(self) -> None:
        bundle = await self.bundles.mark_bundle_successful()
        await self.stats.send_update_success(bundle.version, bundle.id)

    async def _on_ready_expired(self) -> None:
        failed = await self.bundles.current()
        try:
            target = await self.bundles.rollback()
        except RollbackFailedError as e:
            logger.critical("Rollback after readiness timeout failed: %s", e)
            self._fatal_handler(e)
            return

        failed.status = BundleStatus.ERROR
        self.events.emit(UpdateFailedEvent(bundle=failed))
        await self.stats.send_update_failed(failed.version, failed.id, "app ready timeout")
        await self.stats.send_rollback(failed.version, target.version)
        await self._reload_current()

    # =========================================================================
    # BUNDLE OPERATIONS
    # =========================================================================

    async def download(self, options: DownloadOptions) -> BundleInfo:
        """Fetch a bundle and record it as success (or error)."""
        bundle = BundleInfo(
            id=generate_bundle_id(),
            version=options.version,
            status=BundleStatus.DOWNLOADING,
        )
        await self.bundles.register_bundle(bundle)
        await self.stats.send_download_start(options.version)

        def on_progress(percent: int) -> None:
            self.events.emit(DownloadEvent(percent=percent, bundle=bundle))

        try:
            result = await self.fetcher.download(options, bundle.id, on_progress)
        except (LiveBundleError, OSError) as e:
            logger.error("Download of version %s failed: %s", options.version, e)
            await self.bundles.update_status(bundle.id, BundleStatus.ERROR)
            self.events.emit(DownloadFailedEvent(version=options.version))
            await self.stats.send_download_failed(options.version, str(e))
            if isinstance(e, OSError):
                raise DownloadError(f"Failed to store bundle {bundle.id}: {e}") from e
            raise

        bundle = await self.bundles.update_status(
            bundle.id,
            BundleStatus.SUCCESS,
            checksum=result.checksum,
            downloaded=_now_iso(),
        )
        self.events.emit(DownloadCompleteEvent(bundle=bundle))
        await self.stats.send_download_complete(bundle.version, bundle.id)
        return bundle

    async def next(self, bundle_id: str) -> BundleInfo:
        return await self.bundles.next(bundle_id)

    async def set(self, bundle_id: str) -> BundleInfo:
        """Switch to a bundle now and reload the host."""
        bundle = await self.bundles.set(bundle_id)
        await self.reload()
        return bundle

    async def reload(self) -> None:
        """Apply a pending bundle if the gate allows, then reload the current one."""
        if await self._apply_pending_if_allowed():
            logger.info("Pending bundle applied on reload")
        await self._reload_current()

    async def _reload_current(self) -> None:
        current = await self.bundles.current()
        if current.is_builtin:
            self.watchdog.cancel()
        else:
            self.watchdog.arm(current.id)

        if self._reload_handler is not None:
            outcome = self._reload_handler(self.bundles.get_bundle_path(current.id))
            if asyncio.iscoroutine(outcome):
                await outcome
        self.events.emit(AppReloadedEvent())
        logger.info("Reloaded bundle %s", current.id)

    async def delete(self, bundle_id: str) -> None:
        await self.bundles.delete_bundle(bundle_id)

    async def set_bundle_error(self, bundle_id: str) -> BundleInfo:
        return await self.bundles.set_bundle_error(bundle_id)

    async def current(self) -> CurrentBundle:
        return CurrentBundle(bundle=await self.bundles.current(), native=self.settings.version)

    async def list(self, raw: bool = False) -> List[BundleInfo]:
        return await self.bundles.list(raw=raw)

    async def get_next_bundle(self) -> Optional[BundleInfo]:
        return await self.bundles.get_next_bundle()

    async def get_failed_update(self) -> Optional[FailedUpdate]:
        return await self.bundles.get_failed_update()

    async def reset(self, to_last_successful: bool = False) -> BundleInfo:
        bundle = await self.bundles.reset(to_last_successful=to_last_successful)
        await self._reload_current()
        return bundle

    def get_builtin_version(self) -> str:
        return self.settings.version

    # =========================================================================
    # DELAY CONDITIONS
    # =========================================================================

    async def set_multi_delay(self, conditions: List[DelayCondition]) -> None:
        await self.delay.set_multi_delay(conditions)

    async def cancel_delay(self) -> None:
        await self.delay.cancel_delay()

    async def on_background(self) -> None:
        self.delay.on_background()

    async def on_foreground(self) -> None:
        """Returning to the foreground is the moment a queued bundle may go live."""
        applied = await self._apply_pending_if_allowed()
        self.delay.on_foreground()
        if applied:
            await self._reload_current()

    # =========================================================================
    # UPDATE CHECKS
    # =========================================================================

    async def get_latest(self, channel: Optional[str] = None) -> LatestVersion:
        """Ask the update server what this device should run."""
        current = await self.bundles.current()
        body = {
            "platform": PLATFORM,
            "device_id": self.storage.device_id,
            "app_id": self.app_id,
            "custom_id": self.device.get_custom_id(),
            "version_build": self.settings.version,
            "version_code": self.settings.version,
            "version_name": current.version if not current.is_builtin else "builtin",
            "plugin_version": __version__,
            "is_emulator": False,
            "is_prod": True,
        }
        effective = channel or self.channels.effective_channel()
        if effective:
            body["defaultChannel"] = effective

        try:
            data = await self._post_json(self.update_url, body)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error("Update check failed: %s", e)
            return LatestVersion(version=current.version, error="response_error", message=str(e))

        latest = LatestVersion.from_dict(data)
        if latest.error:
            logger.info("Update server reports no update: %s", latest.error)
        return latest

    async def check_for_update(self, launch: bool = False) -> Optional[BundleInfo]:
        """
        Run one auto-update cycle.

        Returns the downloaded bundle, or None if nothing was installed.
        """
        async with self._check_lock:
            current = await self.bundles.current()
            latest = await self.get_latest()

            if latest.error or not (latest.url or latest.manifest):
                self.events.emit(NoNeedUpdateEvent(bundle=current))
                await self.stats.send_no_new_version(current.version)
                return None

            if latest.breaking:
                logger.warning("Breaking update %s available, not installing", latest.version)
                self.events.emit(BreakingAvailableEvent(version=latest.version))
                self.events.emit(NoNeedUpdateEvent(bundle=current))
                return None

            if latest.version == current.version:
                logger.debug("Already up to date (%s)", current.version)
                self.events.emit(NoNeedUpdateEvent(bundle=current))
                await self.stats.send_no_new_version(current.version)
                return None

            known = self._find_bundle_by_version(latest.version)
            if known is not None and known.status == BundleStatus.ERROR:
                logger.info("Version %s failed before, not downloading it again", latest.version)
                self.events.emit(NoNeedUpdateEvent(bundle=current))
                return None

            logger.info("Update available: %s -> %s", current.version, latest.version)
            await self.stats.send_new_version_available(latest.version, current.version)

            if known is not None and known.status == BundleStatus.SUCCESS:
                bundle = known
            else:
                try:
                    bundle = await self.download(latest.to_download_options())
                except LiveBundleError as e:
                    logger.error("Auto-update download failed: %s", e)
                    return None

            try:
                if self._direct_update_now(launch):
                    await self.set(bundle.id)
                else:
                    await self.next(bundle.id)
            except LiveBundleError as e:
                logger.error("Could not activate version %s: %s", latest.version, e)
                return None

            self.events.emit(UpdateAvailableEvent(bundle=bundle))
            return bundle

    def _direct_update_now(self, launch: bool) -> bool:
        mode = self.settings.direct_update
        if mode == "always":
            return True
        if mode == "onLaunch":
            return launch
        if mode == "atInstall":
            return launch and not self.storage.manifest.last_successful_bundle_id
        return False

    def _find_bundle_by_version(self, version: str) -> Optional[BundleInfo]:
        for bundle in self.storage.all_bundles():
            if bundle.version == version:
                return bundle
        return None

    async def _post_json(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                url,
                json=body,
                headers={"User-Agent": f"LiveBundle/{__version__}"},
                timeout=aiohttp.ClientTimeout(total=self.settings.response_timeout),
            ) as resp:
                resp.raise_for_status()
                data = await resp.json(content_type=None)
        if not isinstance(data, dict):
            raise ValueError("Update endpoint returned a non-object response")
        return data

    async def _periodic_check(self) -> None:
        """Background task: one check at launch, then every period_check_delay."""
        launch = True
        while True:
            try:
                await self.check_for_update(launch=launch)
            except Exception as e:
                logger.error("Periodic update check failed: %s", e)
            launch = False

            if not self.settings.period_check_delay:
                break
            try:
                await asyncio.sleep(self.settings.period_check_delay)
            except asyncio.CancelledError:
                break

    def _trigger_check(self) -> None:
        if self.settings.auto_update and self.update_url:
            task = asyncio.create_task(self.check_for_update())
            self._triggered_checks.add(task)
            task.add_done_callback(self._on_triggered_check_done)

    def _on_triggered_check_done(self, task: asyncio.Task) -> None:
        self._triggered_checks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Triggered update check failed: %s", error)

    # =========================================================================
    # CHANNELS / DEVICE
    # =========================================================================

    async def set_channel(self, channel: str, trigger_auto_update: bool = False) -> ChannelResult:
        result = await self.channels.set_channel(channel)
        if trigger_auto_update and result.status in ("ok", "success"):
            self._trigger_check()
        return result

    async def unset_channel(self, trigger_auto_update: bool = False) -> None:
        await self.channels.unset_channel()
        if trigger_auto_update:
            self._trigger_check()

    async def get_channel(self) -> ChannelState:
        return await self.channels.get_channel()

    async def list_channels(self) -> ChannelListResult:
        return await self.channels.list_channels()

    def get_device_id(self) -> str:
        return self.device.get_device_id()

    async def set_custom_id(self, custom_id: str) -> None:
        await self.device.set_custom_id(custom_id)

    # =========================================================================
    # PLUGIN INFO / DYNAMIC CONFIG
    # =========================================================================

    def get_plugin_version(self) -> str:
        return __version__

    def is_auto_update_enabled(self) -> bool:
        return self.settings.auto_update

    def is_auto_update_available(self) -> bool:
        return bool(self.update_url)

    async def set_update_url(self, url: str) -> None:
        self._require(self.settings.allow_modify_url, "set_update_url", "allow_modify_url")
        self.update_url = url
        await self._persist_override(update_url=url)

    async def set_stats_url(self, url: str) -> None:
        self._require(self.settings.allow_modify_url, "set_stats_url", "allow_modify_url")
        self.stats_url = url
        self.stats.set_stats_url(url)
        await self._persist_override(stats_url=url)

    async def set_channel_url(self, url: str) -> None:
        self._require(self.settings.allow_modify_url, "set_channel_url", "allow_modify_url")
        self.channel_url = url
        self.channels.channel_url = url
        await self._persist_override(channel_url=url)

    async def set_app_id(self, app_id: str) -> None:
        self._require(self.settings.allow_modify_app_id, "set_app_id", "allow_modify_app_id")
        self.app_id = app_id
        self.channels.app_id = app_id
        self.stats.app_id = app_id
        await self._persist_override(app_id=app_id)

    def get_app_id(self) -> str:
        return self.app_id

    @staticmethod
    def _require(enabled: bool, operation: str, setting: str) -> None:
        if not enabled:
            raise PermissionDeniedError(f"{operation} is only available when {setting} is enabled")

    async def _persist_override(self, **values: str) -> None:
        if not self.settings.persist_modify_url:
            return
        async with self.storage.lock:
            for name, value in values.items():
                setattr(self.storage.data, name, value)
            await self.storage.save()

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def add_listener(self, kind: Union[EventKind, str], callback: Listener) -> ListenerHandle:
        return self.events.add_listener(kind, callback)

    def remove_all_listeners(self) -> None:
        self.events.remove_all_listeners()


# =============================================================================
# MODULE-LEVEL INSTANCE
# =============================================================================

# Singleton instance, initialized during app startup
_updater: Optional[BundleUpdater] = None


def get_updater() -> Optional[BundleUpdater]:
    """Get the global BundleUpdater instance."""
    return _updater


async def init_updater(config: Config, **kwargs: Any) -> BundleUpdater:
    """Create, initialize and start the global BundleUpdater."""
    global _updater
    _updater = BundleUpdater(config, **kwargs)
    await _updater.initialize()
    await _updater.start()
    return _updater


async def shutdown_updater() -> None:
    """Stop and clean up the global BundleUpdater."""
    global _updater
    if _updater:
        await _updater.stop()
        _updater = None
