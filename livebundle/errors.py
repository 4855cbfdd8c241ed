# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Errors

Exceptions raised by the bundle lifecycle engine. Callers of mutating
operations receive these directly; none of them are retried automatically.
"""


class LiveBundleError(Exception):
    """Base class for all LiveBundle errors."""
    pass


class BundleNotFoundError(LiveBundleError):
    """Raised when a bundle id is not present in the manifest."""

    def __init__(self, bundle_id: str):
        self.bundle_id = bundle_id
        super().__init__(f"Bundle {bundle_id} not found")


class InvalidStateError(LiveBundleError):
    """Raised when a bundle is in the wrong state for the requested transition."""
    pass


class IntegrityError(LiveBundleError):
    """Raised when a checksum does not match or content cannot be decrypted."""

    def __init__(self, bundle_id: str, reason: str = "failed integrity check"):
        self.bundle_id = bundle_id
        super().__init__(f"Bundle {bundle_id} {reason}")


class PermissionDeniedError(LiveBundleError):
    """Raised when an operation is disabled by configuration."""
    pass


class StorageIOError(LiveBundleError):
    """Raised when the manifest document cannot be written to disk."""
    pass


class RollbackFailedError(StorageIOError):
    """
    Raised when a rollback cannot persist its result.

    The manifest on disk can no longer be trusted, so this is treated as a
    process-level failure rather than an ordinary operation error.
    """
    pass


class DownloadError(LiveBundleError):
    """Raised when a bundle archive or file cannot be fetched or unpacked."""
    pass
