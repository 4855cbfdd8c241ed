# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Manifest Store

Persistent storage for the bundle manifest, device identity and endpoint
overrides, plus the per-bundle directories on disk.

Storage is two-phase:
  - ManifestStore knows where things live but holds no document
  - ManifestStore.open() loads (or creates) the document and returns a
    ManifestHandle, which is the only object that can read, mutate or
    save it

Every save is a full-document write to a temp file followed by an atomic
replace, so a crash leaves either the previous or the new document on disk,
never a torn one.
"""

import asyncio
import json
import logging
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken

from .errors import StorageIOError
from .models import (
    BUILTIN_BUNDLE_ID,
    BUNDLES_DIR,
    STORAGE_FILE,
    BundleInfo,
    Manifest,
    StorageData,
    is_valid_bundle_id,
)

logger = logging.getLogger(__name__)

KEY_FILE = ".livebundle-device.key"


# =============================================================================
# SECRET BOX
# =============================================================================

class FernetSecretBox:
    """
    At-rest encryption for small secrets (the device id).

    The Fernet key lives in a file next to the storage document with 0600
    permissions. If the key can neither be read nor created the box reports
    itself unavailable and callers fall back to plaintext.
    """

    def __init__(self, key_path: Path):
        self.key_path = Path(key_path)
        self._fernet: Optional[Fernet] = None
        self._checked = False

    def _load_key(self) -> Optional[Fernet]:
        if self._checked:
            return self._fernet
        self._checked = True
        try:
            if self.key_path.exists():
                key = self.key_path.read_bytes().strip()
            else:
                key = Fernet.generate_key()
                self.key_path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(str(self.key_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
                with os.fdopen(fd, "wb") as f:
                    f.write(key)
            self._fernet = Fernet(key)
        except (OSError, ValueError) as e:
            logger.warning("Secure storage unavailable, device id kept in plaintext: %s", e)
            self._fernet = None
        return self._fernet

    def is_available(self) -> bool:
        return self._load_key() is not None

    def encrypt(self, plaintext: str) -> str:
        fernet = self._load_key()
        if fernet is None:
            raise RuntimeError("Secure storage unavailable")
        return fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        fernet = self._load_key()
        if fernet is None:
            raise RuntimeError("Secure storage unavailable")
        return fernet.decrypt(token.encode("ascii")).decode("utf-8")


# =============================================================================
# STORE (UNINITIALIZED)
# =============================================================================

class ManifestStore:
    """
    Location of the storage document and bundle tree.

    Usage:
        store = ManifestStore(data_dir=Path("/var/lib/app"))
        handle = await store.open()
        async with handle.lock:
            handle.manifest.channel = "beta"
            await handle.save()
    """

    def __init__(
        self,
        data_dir: Path,
        secret_box: Optional[FernetSecretBox] = None,
        use_secure_storage: bool = True,
    ):
        """
        Args:
            data_dir: Per-installation data directory.
            secret_box: At-rest encryption for the device id. Defaults to a
                        Fernet key file inside data_dir.
            use_secure_storage: Set False to always store the device id in
                                plaintext.
        """
        self.data_dir = Path(data_dir)
        self.storage_path = self.data_dir / STORAGE_FILE
        self.bundles_path = self.data_dir / BUNDLES_DIR
        if secret_box is None and use_secure_storage:
            secret_box = FernetSecretBox(self.data_dir / KEY_FILE)
        self.secret_box = secret_box

    async def open(self) -> "ManifestHandle":
        """Load the document (creating defaults if absent or corrupt)."""
        await asyncio.to_thread(self.bundles_path.mkdir, parents=True, exist_ok=True)
        data = await asyncio.to_thread(self._load)
        return ManifestHandle(self, data)

    def _load(self) -> StorageData:
        if self.storage_path.exists():
            try:
                with open(self.storage_path, "r") as f:
                    raw = json.load(f)
                data = StorageData.from_dict(raw)
                data.device_id = self._reveal_device_id(data.device_id)
                logger.info(
                    "Loaded storage with %d bundles (current=%s)",
                    len(data.manifest.bundles),
                    data.manifest.current_bundle_id,
                )
                return data
            except Exception as e:
                logger.error("Failed to load storage, using defaults: %s", e)
        else:
            logger.info("Storage file not found, starting fresh: %s", self.storage_path)

        return StorageData(device_id=str(uuid.uuid4()), manifest=Manifest())

    def _reveal_device_id(self, stored: str) -> str:
        if self.secret_box is None or not self.secret_box.is_available():
            return stored
        try:
            return self.secret_box.decrypt(stored)
        except (InvalidToken, ValueError, UnicodeError):
            # Not encrypted yet
            return stored

    def _conceal_device_id(self, device_id: str) -> str:
        if self.secret_box is None or not self.secret_box.is_available():
            return device_id
        try:
            return self.secret_box.encrypt(device_id)
        except (RuntimeError, ValueError) as e:
            logger.warning("Device id encryption failed, storing plaintext: %s", e)
            return device_id

    def _serialize(self, data: StorageData) -> dict:
        return data.to_dict(device_id=self._conceal_device_id(data.device_id))

    def _write(self, payload: dict) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

        # Write atomically; each save gets its own temp file
        with tempfile.NamedTemporaryFile(
            "w",
            dir=self.data_dir,
            prefix=self.storage_path.stem + ".",
            suffix=".tmp",
            delete=False,
        ) as f:
            temp_path = Path(f.name)
            try:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            except BaseException:
                f.close()
                temp_path.unlink(missing_ok=True)
                raise
        try:
            temp_path.replace(self.storage_path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise


# =============================================================================
# HANDLE (INITIALIZED)
# =============================================================================

class ManifestHandle:
    """
    The loaded storage document and everything that touches it.

    `lock` guards read-modify-save sequences on the document. Every component
    that mutates the manifest holds it around the mutation and the save, so
    lifecycle transitions never interleave with delay, channel or device
    updates. save() itself does not take `lock` (it is called while holding
    it); concurrent saves are ordered by a separate write lock.
    """

    def __init__(self, store: ManifestStore, data: StorageData):
        self._store = store
        self.data = data
        self.lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @property
    def manifest(self) -> Manifest:
        return self.data.manifest

    @property
    def device_id(self) -> str:
        return self.data.device_id

    @property
    def bundles_path(self) -> Path:
        return self._store.bundles_path

    async def save(self) -> None:
        """Durably persist the whole document. Raises StorageIOError."""
        try:
            async with self._write_lock:
                payload = self._store._serialize(self.data)
                await asyncio.to_thread(self._store._write, payload)
        except OSError as e:
            logger.error("Failed to save storage: %s", e)
            raise StorageIOError(f"Failed to save storage: {e}") from e
        logger.debug("Saved storage with %d bundles", len(self.manifest.bundles))

    # =========================================================================
    # BUNDLE RECORDS
    # =========================================================================

    def get_bundle(self, bundle_id: str) -> Optional[BundleInfo]:
        return self.manifest.bundles.get(bundle_id)

    def set_bundle(self, bundle: BundleInfo) -> None:
        if bundle.id == BUILTIN_BUNDLE_ID:
            raise ValueError("The builtin bundle is never stored in the manifest")
        self.manifest.bundles[bundle.id] = bundle

    def remove_bundle(self, bundle_id: str) -> None:
        self.manifest.bundles.pop(bundle_id, None)

    def all_bundles(self) -> List[BundleInfo]:
        return list(self.manifest.bundles.values())

    # =========================================================================
    # BUNDLE FILES
    # =========================================================================

    def bundle_path(self, bundle_id: str) -> Path:
        if not is_valid_bundle_id(bundle_id):
            raise ValueError(f"Invalid bundle id: {bundle_id!r}")
        return self.bundles_path / bundle_id

    async def bundle_exists(self, bundle_id: str) -> bool:
        return await asyncio.to_thread(self.bundle_path(bundle_id).is_dir)

    async def delete_bundle_files(self, bundle_id: str) -> None:
        """Remove a bundle directory. Raises OSError if it cannot be removed."""
        path = self.bundle_path(bundle_id)
        if await asyncio.to_thread(path.exists):
            await asyncio.to_thread(shutil.rmtree, path)
            logger.info("Deleted bundle files: %s", path)

    async def cleanup_orphaned_bundles_best_effort(self) -> int:
        """Remove bundle directories with no manifest entry. Never raises."""
        removed = 0
        try:
            entries = await asyncio.to_thread(lambda: list(self.bundles_path.iterdir()))
        except OSError as e:
            logger.warning("Failed to list bundles directory: %s", e)
            return 0

        known = set(self.manifest.bundles)
        for entry in entries:
            if not entry.is_dir() or entry.name in known:
                continue
            try:
                await asyncio.to_thread(shutil.rmtree, entry)
                removed += 1
                logger.info("Removed orphaned bundle directory: %s", entry.name)
            except OSError as e:
                logger.warning("Failed to remove orphaned bundle %s: %s", entry.name, e)
        return removed
