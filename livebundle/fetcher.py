# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Fetcher

Downloads bundles from the update server and unpacks them into the
bundles directory.

Two delivery formats are supported:
  1. Zip archive: downloaded whole, optionally decrypted with the session
     key, checked against the server checksum, then extracted
  2. Per-file manifest: every file fetched on its own and checked against
     its `file_hash`

Either way the result is an extracted directory whose tree digest becomes
the bundle's stored checksum. verify_integrity() recomputes that digest
from disk whenever the lifecycle manager needs to trust the bundle again.
"""

import asyncio
import logging
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from . import __version__
from .errors import DownloadError, IntegrityError
from .integrity import IntegrityVerifier, digest, file_checksum, tree_digest, try_decompress
from .storage import ManifestHandle

logger = logging.getLogger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

DOWNLOADS_DIR = "downloads"
DOWNLOAD_TIMEOUT = 600  # 10 minutes max per archive
DOWNLOAD_CHUNK_SIZE = 65536  # 64KB chunks

ProgressCallback = Callable[[int], None]


@dataclass
class ManifestEntry:
    """One file of a per-file delivery."""
    file_name: str
    file_hash: str
    download_url: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestEntry":
        return cls(
            file_name=str(data["file_name"]),
            file_hash=str(data.get("file_hash") or ""),
            download_url=str(data["download_url"]),
        )


@dataclass
class DownloadOptions:
    """What to fetch: the fields of an update-check response."""
    url: str
    version: str
    session_key: Optional[str] = None
    checksum: Optional[str] = None
    manifest: List[ManifestEntry] = field(default_factory=list)


@dataclass
class FetchResult:
    """An extracted bundle directory and its tree digest."""
    path: Path
    checksum: str


def _safe_relative(name: str) -> PurePosixPath:
    """Reject absolute paths and parent references in archive/manifest names."""
    rel = PurePosixPath(name.replace("\\", "/"))
    if rel.is_absolute() or ".." in rel.parts or not rel.parts:
        raise DownloadError(f"Unsafe path in bundle: {name}")
    return rel


def extract_archive(archive_path: Path, dest: Path) -> None:
    """
    Extract a zip archive into dest.

    If the archive wraps everything in a single top-level directory (other
    than `www`), that directory is flattened so the entry point ends up at
    dest/www/index.html.
    """
    staging = dest.with_name(dest.name + ".staging")
    if staging.exists():
        shutil.rmtree(staging)
    staging.mkdir(parents=True)

    try:
        with zipfile.ZipFile(archive_path) as zf:
            # Security: prevent path traversal attacks
            for member in zf.infolist():
                _safe_relative(member.filename)
            zf.extractall(staging)
    except zipfile.BadZipFile as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise DownloadError(f"Downloaded archive is not a valid zip: {e}") from e

    extracted_items = [p for p in staging.iterdir() if p.name != "__MACOSX"]
    if len(extracted_items) == 1 and extracted_items[0].is_dir() and extracted_items[0].name != "www":
        source_dir = extracted_items[0]
    else:
        source_dir = staging

    if dest.exists():
        shutil.rmtree(dest)
    shutil.move(str(source_dir), str(dest))
    if staging.exists():
        shutil.rmtree(staging)


class BundleFetcher:
    """
    Fetch side of the bundle lifecycle.

    Usage:
        fetcher = BundleFetcher(handle, verifier)
        result = await fetcher.download(options, bundle_id, progress=print)
        ok = await fetcher.verify_integrity(bundle_id)
    """

    def __init__(
        self,
        storage: ManifestHandle,
        verifier: IntegrityVerifier,
        timeout: int = DOWNLOAD_TIMEOUT,
    ):
        self.storage = storage
        self.verifier = verifier
        self.timeout = timeout
        self.download_dir = storage.bundles_path.parent / DOWNLOADS_DIR

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def download(
        self,
        options: DownloadOptions,
        bundle_id: str,
        progress: Optional[ProgressCallback] = None,
    ) -> FetchResult:
        """
        Fetch and unpack a bundle into its directory.

        Raises:
            DownloadError: Transport or archive failure.
            IntegrityError: Checksum mismatch or decryption failure.
        """
        dest = self.storage.bundle_path(bundle_id)
        try:
            if options.manifest:
                await self._download_manifest(options, bundle_id, dest, progress)
            else:
                await self._download_archive(options, bundle_id, dest, progress)
            checksum = await asyncio.to_thread(tree_digest, dest)
        except Exception:
            await asyncio.to_thread(shutil.rmtree, dest, True)
            raise

        self._report(progress, 100)
        logger.info("Bundle %s (version %s) extracted to %s", bundle_id, options.version, dest)
        return FetchResult(path=dest, checksum=checksum)

    async def verify_integrity(self, bundle_id: str) -> bool:
        """Recompute the stored bundle's tree digest from disk and compare."""
        bundle = self.storage.get_bundle(bundle_id)
        if bundle is None or not bundle.checksum:
            logger.warning("Bundle %s has no recorded checksum", bundle_id)
            return False
        try:
            actual = await asyncio.to_thread(tree_digest, self.storage.bundle_path(bundle_id))
        except OSError as e:
            logger.warning("Cannot verify bundle %s: %s", bundle_id, e)
            return False
        if actual != bundle.checksum.lower():
            logger.error("Bundle %s checksum mismatch (stored %s, on disk %s)", bundle_id, bundle.checksum, actual)
            return False
        return True

    # =========================================================================
    # ARCHIVE DELIVERY
    # =========================================================================

    async def _download_archive(
        self,
        options: DownloadOptions,
        bundle_id: str,
        dest: Path,
        progress: Optional[ProgressCallback],
    ) -> None:
        await asyncio.to_thread(self.download_dir.mkdir, parents=True, exist_ok=True)
        archive = self.download_dir / f"{bundle_id}.zip"
        try:
            await self._fetch_to_file(options.url, archive, progress)

            if options.session_key:
                ok = await asyncio.to_thread(self.verifier.decrypt_file, archive, options.session_key)
                if not ok:
                    raise IntegrityError(bundle_id, "could not be decrypted")

            if options.checksum:
                expected = self._expected_checksum(bundle_id, options.checksum, options.session_key)
                actual = await asyncio.to_thread(file_checksum, archive)
                if actual != expected:
                    raise IntegrityError(
                        bundle_id, f"checksum mismatch (expected {expected}, got {actual})"
                    )

            await asyncio.to_thread(extract_archive, archive, dest)
        finally:
            await asyncio.to_thread(archive.unlink, True)

    def _expected_checksum(self, bundle_id: str, checksum: str, session_key: Optional[str]) -> str:
        if not session_key:
            return checksum.strip().lower()
        decrypted = self.verifier.decrypt_checksum(checksum, session_key)
        if decrypted is None:
            raise IntegrityError(bundle_id, "checksum could not be decrypted")
        return decrypted

    # =========================================================================
    # PER-FILE DELIVERY
    # =========================================================================

    async def _download_manifest(
        self,
        options: DownloadOptions,
        bundle_id: str,
        dest: Path,
        progress: Optional[ProgressCallback],
    ) -> None:
        await asyncio.to_thread(dest.mkdir, parents=True, exist_ok=True)
        total = len(options.manifest)

        for index, entry in enumerate(options.manifest, start=1):
            target = dest.joinpath(*_safe_relative(entry.file_name).parts)
            data = await self._fetch_bytes(entry.download_url)

            if options.session_key:
                decrypted = self.verifier.decrypt_bytes(data, options.session_key)
                if decrypted is None:
                    raise IntegrityError(bundle_id, f"file {entry.file_name} could not be decrypted")
                data = decrypted
            else:
                data = try_decompress(data)

            if entry.file_hash and digest(data) != entry.file_hash.strip().lower():
                raise IntegrityError(bundle_id, f"file {entry.file_name} checksum mismatch")

            await asyncio.to_thread(self._write_file, target, data)
            self._report(progress, int(index * 100 / total))

        logger.info("Fetched %d files for bundle %s", total, bundle_id)

    @staticmethod
    def _write_file(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    # =========================================================================
    # HTTP
    # =========================================================================

    def _get_headers(self) -> Dict[str, str]:
        return {"User-Agent": f"LiveBundle/{__version__}"}

    async def _fetch_to_file(
        self,
        url: str,
        dest: Path,
        progress: Optional[ProgressCallback],
    ) -> None:
        """Stream a URL to a file, reporting whole-number percentages."""
        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with session.get(url, headers=self._get_headers(), timeout=timeout) as resp:
                    resp.raise_for_status()
                    total_size = int(resp.headers.get("Content-Length", 0))
                    downloaded = 0
                    with open(dest, "wb") as f:
                        async for chunk in resp.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                            f.write(chunk)
                            downloaded += len(chunk)
                            if total_size > 0:
                                # Keep 100 for after extraction
                                self._report(progress, min(99, int(downloaded * 100 / total_size)))
            logger.info("Downloaded %s (%.1f MB)", url, downloaded / (1024 * 1024))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Download failed: %s", e)
            raise DownloadError(f"Failed to download {url}: {e}") from e

    async def _fetch_bytes(self, url: str) -> bytes:
        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with session.get(url, headers=self._get_headers(), timeout=timeout) as resp:
                    resp.raise_for_status()
                    return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Download failed: %s", e)
            raise DownloadError(f"Failed to download {url}: {e}") from e

    @staticmethod
    def _report(progress: Optional[ProgressCallback], percent: int) -> None:
        if progress is not None:
            progress(percent)
