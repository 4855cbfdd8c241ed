# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Device Identity

The device id is generated once by the manifest store. The custom id is an
app-chosen label; it only survives a restart when persist_custom_id is on.
"""

import logging
from typing import Optional

from .storage import ManifestHandle

logger = logging.getLogger(__name__)


class DeviceManager:
    """Device id and custom id."""

    def __init__(self, storage: ManifestHandle, persist_custom_id: bool = False):
        self.storage = storage
        self.persist_custom_id = persist_custom_id
        self._custom_id: Optional[str] = storage.manifest.custom_id if persist_custom_id else None
        if not persist_custom_id and storage.manifest.custom_id is not None:
            # Left over from a run that persisted it
            storage.manifest.custom_id = None

    def get_device_id(self) -> str:
        return self.storage.device_id

    def get_custom_id(self) -> Optional[str]:
        return self._custom_id

    async def set_custom_id(self, custom_id: str) -> None:
        """Set (or with an empty string, clear) the custom id."""
        self._custom_id = custom_id.strip() or None
        if self.persist_custom_id:
            async with self.storage.lock:
                self.storage.manifest.custom_id = self._custom_id
                await self.storage.save()
        logger.info("Custom id %s", "set" if self._custom_id else "cleared")

    async def clear_custom_id(self) -> None:
        await self.set_custom_id("")
