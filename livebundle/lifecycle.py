# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Lifecycle Manager

State machine for bundles and the manifest pointers into them.

Bundle states:
  pending -> downloading -> success
  pending | downloading -> error     (fetch or verification failure)
  success -> error                   (failed activation, manual marking)

Manifest pointers:
  current         the bundle this process runs; always resolvable
  next            queued for the next activation; must be verified
  last successful the most recent bundle that reported ready

Every public operation holds the manifest lock for its whole
read-modify-persist sequence, shared with every other component that
saves the manifest, so back-to-back calls never interleave.
Operations whose names end in `_best_effort` log failures and never raise.
"""

import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional

from .errors import (
    BundleNotFoundError,
    IntegrityError,
    InvalidStateError,
    LiveBundleError,
    PermissionDeniedError,
    RollbackFailedError,
    StorageIOError,
)
from .models import (
    BUILTIN_BUNDLE_ID,
    BUNDLE_ENTRY_POINT,
    ApplyResult,
    BundleInfo,
    BundleStatus,
    FailedUpdate,
)
from .storage import ManifestHandle

logger = logging.getLogger(__name__)

IntegrityCheck = Callable[[str], Awaitable[bool]]

# Transitions allowed on the fetch path. Failure paths use _mark_error.
ALLOWED_TRANSITIONS: Dict[BundleStatus, FrozenSet[BundleStatus]] = {
    BundleStatus.PENDING: frozenset({BundleStatus.DOWNLOADING, BundleStatus.ERROR}),
    BundleStatus.DOWNLOADING: frozenset({BundleStatus.SUCCESS, BundleStatus.ERROR}),
    BundleStatus.SUCCESS: frozenset(),
    BundleStatus.ERROR: frozenset(),
}


class BundleManager:
    """
    Owns every mutation of the manifest.

    Usage:
        manager = BundleManager(handle, verify_integrity, "1.0.0", builtin_path)
        await manager.next(bundle_id)
        result = await manager.apply_pending_update()   # at next start-up
    """

    def __init__(
        self,
        storage: ManifestHandle,
        verify_integrity: IntegrityCheck,
        builtin_version: str,
        builtin_path: Path,
        auto_delete_failed: bool = True,
        auto_delete_previous: bool = True,
        allow_manual_bundle_error: bool = False,
    ):
        """
        Args:
            storage: Loaded manifest handle.
            verify_integrity: Coroutine re-checking a stored bundle against its
                              recorded checksum; True when it still matches.
            builtin_version: Version of the bundle shipped with the app.
            builtin_path: Entry point of the builtin bundle.
            auto_delete_failed: Delete bundles once they are marked error.
            auto_delete_previous: Delete the previous bundle after a switch.
            allow_manual_bundle_error: Permit set_bundle_error().
        """
        self.storage = storage
        self._verify_integrity = verify_integrity
        self.builtin_version = builtin_version
        self.builtin_path = Path(builtin_path)
        self.auto_delete_failed = auto_delete_failed
        self.auto_delete_previous = auto_delete_previous
        self.allow_manual_bundle_error = allow_manual_bundle_error
        self._lock = storage.lock

    # =========================================================================
    # QUERIES
    # =========================================================================

    def builtin_bundle(self) -> BundleInfo:
        return BundleInfo(
            id=BUILTIN_BUNDLE_ID,
            version=self.builtin_version,
            downloaded="",
            checksum="",
            status=BundleStatus.SUCCESS,
        )

    def get_bundle(self, bundle_id: str) -> Optional[BundleInfo]:
        if bundle_id == BUILTIN_BUNDLE_ID:
            return self.builtin_bundle()
        return self.storage.get_bundle(bundle_id)

    async def current(self) -> BundleInfo:
        """The active bundle; builtin if the pointer is unset or dangling."""
        current_id = self.storage.manifest.current_bundle_id
        return self.get_bundle(current_id) or self.builtin_bundle()

    async def list(self, raw: bool = False) -> List[BundleInfo]:
        """
        Builtin plus all stored bundles.

        Unless `raw`, bundles whose directory is missing from disk are left
        out of the result (but stay in the manifest).
        """
        bundles = [self.builtin_bundle()]
        for bundle in self.storage.all_bundles():
            if raw or await self.storage.bundle_exists(bundle.id):
                bundles.append(bundle)
        return bundles

    async def get_next_bundle(self) -> Optional[BundleInfo]:
        next_id = self.storage.manifest.next_bundle_id
        if not next_id:
            return None
        return self.get_bundle(next_id)

    def get_bundle_path(self, bundle_id: str) -> Path:
        """Entry point file for a bundle."""
        if bundle_id == BUILTIN_BUNDLE_ID:
            return self.builtin_path
        return self.storage.bundle_path(bundle_id).joinpath(*BUNDLE_ENTRY_POINT)

    def current_bundle_path(self) -> Path:
        return self.get_bundle_path(self.storage.manifest.current_bundle_id)

    # =========================================================================
    # FETCH PATH
    # =========================================================================

    async def register_bundle(self, bundle: BundleInfo) -> BundleInfo:
        """Record a new bundle as it starts downloading."""
        if bundle.id == BUILTIN_BUNDLE_ID:
            raise InvalidStateError("Cannot register the builtin bundle")
        if bundle.status not in (BundleStatus.PENDING, BundleStatus.DOWNLOADING):
            raise InvalidStateError(
                f"New bundle {bundle.id} must start pending or downloading, not {bundle.status.value}"
            )
        async with self._lock:
            if self.storage.get_bundle(bundle.id) is not None:
                raise InvalidStateError(f"Bundle {bundle.id} already exists")
            self.storage.set_bundle(bundle)
            await self.storage.save()
        logger.info("Registered bundle %s (version %s)", bundle.id, bundle.version)
        return bundle

    async def update_status(
        self,
        bundle_id: str,
        status: BundleStatus,
        checksum: Optional[str] = None,
        downloaded: Optional[str] = None,
    ) -> BundleInfo:
        """Advance a bundle along the fetch path."""
        async with self._lock:
            bundle = self._require_stored(bundle_id)
            if status not in ALLOWED_TRANSITIONS[bundle.status]:
                raise InvalidStateError(
                    f"Bundle {bundle_id} cannot move from {bundle.status.value} to {status.value}"
                )
            bundle.status = status
            if checksum is not None:
                bundle.checksum = checksum.lower()
            if downloaded is not None:
                bundle.downloaded = downloaded
            await self.storage.save()
        logger.info("Bundle %s is now %s", bundle_id, status.value)
        return bundle

    # =========================================================================
    # ACTIVATION
    # =========================================================================

    async def next(self, bundle_id: str) -> BundleInfo:
        """Queue a verified bundle for the next activation."""
        async with self._lock:
            if bundle_id == BUILTIN_BUNDLE_ID:
                bundle = self.builtin_bundle()
            else:
                bundle = self._require_stored(bundle_id)
                if bundle.status != BundleStatus.SUCCESS:
                    raise InvalidStateError(
                        f"Bundle {bundle_id} is not ready (status: {bundle.status.value})"
                    )
                if not await self._verify(bundle_id):
                    raise IntegrityError(bundle_id)

            self.storage.manifest.next_bundle_id = bundle_id
            await self.storage.save()
        logger.info("Bundle %s queued as next", bundle_id)
        return bundle

    async def set(self, bundle_id: str) -> BundleInfo:
        """Make a bundle current immediately. The caller reloads the app."""
        async with self._lock:
            if bundle_id == BUILTIN_BUNDLE_ID:
                bundle = self.builtin_bundle()
            else:
                bundle = self._require_stored(bundle_id)
                if bundle.status != BundleStatus.SUCCESS:
                    raise InvalidStateError(
                        f"Bundle {bundle_id} is not ready (status: {bundle.status.value})"
                    )
                if not await self._verify(bundle_id):
                    raise IntegrityError(bundle_id)

            manifest = self.storage.manifest
            previous_id = manifest.current_bundle_id
            manifest.current_bundle_id = bundle_id
            manifest.next_bundle_id = None
            await self.storage.save()
            logger.info("Current bundle set to %s (was %s)", bundle_id, previous_id)

            if self.auto_delete_previous and previous_id != bundle_id:
                await self._delete_best_effort(previous_id)

        return bundle

    async def apply_pending_update(self) -> ApplyResult:
        """
        Swap in the queued bundle at start-up.

        Calling it twice without a new next() in between activates at most
        once, because a successful swap clears the next pointer.
        """
        async with self._lock:
            manifest = self.storage.manifest
            next_id = manifest.next_bundle_id
            current_id = manifest.current_bundle_id

            if not next_id or next_id == current_id:
                if next_id:
                    manifest.next_bundle_id = None
                    await self.storage.save()
                return ApplyResult(applied=False, bundle_id=current_id)

            if next_id != BUILTIN_BUNDLE_ID:
                bundle = self.storage.get_bundle(next_id)
                if bundle is None:
                    logger.warning("Queued bundle %s no longer exists, dropping it", next_id)
                    manifest.next_bundle_id = None
                    await self.storage.save()
                    return ApplyResult(applied=False, bundle_id=current_id)

                if bundle.status != BundleStatus.SUCCESS or not await self._verify(next_id):
                    logger.error("Queued bundle %s failed verification, not activating", next_id)
                    self._mark_error(bundle)
                    manifest.next_bundle_id = None
                    await self.storage.save()
                    return ApplyResult(applied=False, bundle_id=current_id)

            manifest.current_bundle_id = next_id
            manifest.next_bundle_id = None
            await self.storage.save()
            logger.info("Applied pending update: %s -> %s", current_id, next_id)

            if self.auto_delete_previous:
                await self._delete_best_effort(current_id)

        return ApplyResult(applied=True, bundle_id=next_id)

    async def reset(self, to_last_successful: bool = False) -> BundleInfo:
        """Return to the builtin bundle, or to the last successful one."""
        async with self._lock:
            manifest = self.storage.manifest
            target_id = BUILTIN_BUNDLE_ID
            if to_last_successful:
                target_id = self._rollback_target(exclude=None)
            manifest.current_bundle_id = target_id
            manifest.next_bundle_id = None
            await self.storage.save()
        logger.info("Reset to bundle %s", target_id)
        return self.get_bundle(target_id) or self.builtin_bundle()

    # =========================================================================
    # READINESS OUTCOMES
    # =========================================================================

    async def mark_bundle_successful(self) -> BundleInfo:
        """Record the current bundle as the last one known to be good."""
        async with self._lock:
            manifest = self.storage.manifest
            manifest.last_successful_bundle_id = manifest.current_bundle_id
            await self.storage.save()
            current_id = manifest.current_bundle_id
        logger.info("Bundle %s marked successful", current_id)
        return self.get_bundle(current_id) or self.builtin_bundle()

    async def rollback(self) -> BundleInfo:
        """
        Abandon the current bundle after it failed to report ready.

        Marks it error, stores it as the failed update, and switches back to
        the last successful bundle (or builtin). Only a failure to persist the
        result escapes, as RollbackFailedError.
        """
        async with self._lock:
            manifest = self.storage.manifest
            failed_id = manifest.current_bundle_id
            failed = self.storage.get_bundle(failed_id)

            if failed is not None:
                self._mark_error(failed)
                manifest.failed_update = FailedUpdate(
                    bundle=BundleInfo.from_dict(failed.to_dict())
                )

            target_id = self._rollback_target(exclude=failed_id)
            manifest.current_bundle_id = target_id
            manifest.next_bundle_id = None
            if manifest.last_successful_bundle_id == failed_id:
                manifest.last_successful_bundle_id = None

            try:
                await self.storage.save()
            except StorageIOError as e:
                logger.critical("Rollback could not be persisted: %s", e)
                raise RollbackFailedError(str(e)) from e

            logger.warning("Rolled back from %s to %s", failed_id, target_id)

            if failed is not None and self.auto_delete_failed:
                await self._delete_best_effort(failed_id)

        return self.get_bundle(target_id) or self.builtin_bundle()

    async def get_failed_update(self) -> Optional[FailedUpdate]:
        """Return the stored failed update once, then forget it."""
        async with self._lock:
            manifest = self.storage.manifest
            failed = manifest.failed_update
            if failed is None:
                return None
            manifest.failed_update = None
            await self.storage.save()
        return failed

    # =========================================================================
    # DELETION
    # =========================================================================

    async def delete_bundle(self, bundle_id: str) -> None:
        """Delete a bundle's files and its manifest entry."""
        async with self._lock:
            await self._delete(bundle_id)

    async def set_bundle_error(self, bundle_id: str) -> BundleInfo:
        """Manually mark a bundle as failed (only when enabled by config)."""
        if not self.allow_manual_bundle_error:
            raise PermissionDeniedError(
                "set_bundle_error is only available when allow_manual_bundle_error is enabled"
            )
        if bundle_id == BUILTIN_BUNDLE_ID:
            raise InvalidStateError("The builtin bundle cannot be marked as error")

        async with self._lock:
            bundle = self._require_stored(bundle_id)
            self._mark_error(bundle)
            await self.storage.save()
            if self.auto_delete_failed:
                await self._delete_best_effort(bundle_id)
        return bundle

    async def purge(self) -> int:
        """
        Return to builtin and drop every stored bundle.

        Used when the host application itself was upgraded, which makes
        bundles built against the old host untrustworthy. Individual
        deletions are best-effort; returns how many succeeded.
        """
        async with self._lock:
            manifest = self.storage.manifest
            manifest.current_bundle_id = BUILTIN_BUNDLE_ID
            manifest.next_bundle_id = None
            manifest.last_successful_bundle_id = None
            await self.storage.save()

            removed = 0
            for bundle in self.storage.all_bundles():
                if await self._delete_best_effort(bundle.id):
                    removed += 1
        logger.info("Purged %d bundles", removed)
        return removed

    async def cleanup(self) -> None:
        """Remove error bundles (if enabled) and orphaned bundle directories."""
        async with self._lock:
            if self.auto_delete_failed:
                for bundle in self.storage.all_bundles():
                    if bundle.status == BundleStatus.ERROR:
                        await self._delete_best_effort(bundle.id)
            await self.storage.cleanup_orphaned_bundles_best_effort()

    # =========================================================================
    # INTERNALS (lock held by caller)
    # =========================================================================

    def _require_stored(self, bundle_id: str) -> BundleInfo:
        bundle = self.storage.get_bundle(bundle_id)
        if bundle is None:
            raise BundleNotFoundError(bundle_id)
        return bundle

    def _mark_error(self, bundle: BundleInfo) -> None:
        if bundle.status != BundleStatus.ERROR:
            logger.warning("Bundle %s marked as error (was %s)", bundle.id, bundle.status.value)
        bundle.status = BundleStatus.ERROR

    def _rollback_target(self, exclude: Optional[str]) -> str:
        candidate = self.storage.manifest.last_successful_bundle_id
        if not candidate or candidate == exclude:
            return BUILTIN_BUNDLE_ID
        if candidate == BUILTIN_BUNDLE_ID:
            return candidate
        bundle = self.storage.get_bundle(candidate)
        if bundle is None or bundle.status != BundleStatus.SUCCESS:
            return BUILTIN_BUNDLE_ID
        return candidate

    async def _verify(self, bundle_id: str) -> bool:
        try:
            return bool(await self._verify_integrity(bundle_id))
        except Exception as e:
            logger.error("Integrity check for %s raised: %s", bundle_id, e)
            return False

    async def _delete(self, bundle_id: str) -> None:
        manifest = self.storage.manifest
        if bundle_id == BUILTIN_BUNDLE_ID:
            raise InvalidStateError("Cannot delete builtin bundle")
        if bundle_id == manifest.current_bundle_id:
            raise InvalidStateError("Cannot delete currently active bundle")
        if bundle_id == manifest.next_bundle_id:
            raise InvalidStateError("Cannot delete bundle set as next")
        self._require_stored(bundle_id)

        try:
            await self.storage.delete_bundle_files(bundle_id)
        except OSError as e:
            raise StorageIOError(f"Failed to delete files of bundle {bundle_id}: {e}") from e

        self.storage.remove_bundle(bundle_id)
        if manifest.last_successful_bundle_id == bundle_id:
            manifest.last_successful_bundle_id = None
        await self.storage.save()
        logger.info("Deleted bundle %s", bundle_id)

    async def _delete_best_effort(self, bundle_id: str) -> bool:
        if bundle_id == BUILTIN_BUNDLE_ID:
            return False
        try:
            await self._delete(bundle_id)
            return True
        except (LiveBundleError, OSError) as e:
            logger.warning("Best-effort delete of %s skipped: %s", bundle_id, e)
            return False
