# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Delay Gate

Decides whether a queued bundle may be activated right now. Conditions are
persisted in the manifest; the observations they are checked against
(background time, kill history) live only in this process.

All conditions must hold for the gate to open. No conditions means open.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .models import DelayCondition, DelayConditionKind
from .storage import ManifestHandle

logger = logging.getLogger(__name__)


def parse_version(version_str: str) -> Tuple[int, ...]:
    """Split a dotted version into integers; bad or empty parts become 0."""
    parts = []
    for part in version_str.strip().split("."):
        try:
            parts.append(int(part))
        except ValueError:
            parts.append(0)
    return tuple(parts)


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 comparing dotted versions component-wise, zero-padded."""
    pa, pb = parse_version(a), parse_version(b)
    length = max(len(pa), len(pb))
    pa = pa + (0,) * (length - len(pa))
    pb = pb + (0,) * (length - len(pb))
    if pa < pb:
        return -1
    if pa > pb:
        return 1
    return 0


def parse_date(value: str) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp. Naive values are taken as UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DelayGate:
    """Evaluates the persisted delay conditions against observed app state."""

    def __init__(
        self,
        storage: ManifestHandle,
        app_version: str,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            storage: Loaded manifest holding the conditions.
            app_version: Version of the host application.
            clock: Wall-clock source in seconds (injectable for tests).
        """
        self.storage = storage
        self.app_version = app_version
        self._clock = clock
        self._background_since: Optional[float] = None
        self._was_killed = False

    # =========================================================================
    # CONDITIONS
    # =========================================================================

    async def set_multi_delay(self, conditions: List[DelayCondition]) -> None:
        async with self.storage.lock:
            self.storage.manifest.delay_conditions = list(conditions)
            await self.storage.save()
        logger.info(
            "Delay conditions set: %s",
            ", ".join(c.kind.value for c in conditions) or "none",
        )

    async def cancel_delay(self) -> None:
        async with self.storage.lock:
            self.storage.manifest.delay_conditions = []
            await self.storage.save()
        logger.info("Delay conditions cleared")

    def get_delay_conditions(self) -> List[DelayCondition]:
        return list(self.storage.manifest.delay_conditions)

    def are_conditions_satisfied(self) -> bool:
        for condition in self.storage.manifest.delay_conditions:
            if not self.is_condition_satisfied(condition):
                logger.debug("Delay condition not met: %s", condition.kind.value)
                return False
        return True

    def is_condition_satisfied(self, condition: DelayCondition) -> bool:
        kind = condition.kind
        if kind is DelayConditionKind.BACKGROUND:
            return self._background_satisfied(condition.value)
        if kind is DelayConditionKind.KILL:
            return self._was_killed
        if kind is DelayConditionKind.DATE:
            return self._date_satisfied(condition.value)
        if kind is DelayConditionKind.NATIVE_VERSION:
            return self._version_satisfied(condition.value)
        raise ValueError(f"Unknown delay condition: {kind!r}")

    def _background_satisfied(self, value: Optional[str]) -> bool:
        if self._background_since is None:
            return False
        if not value:
            return True
        try:
            required_ms = int(value)
        except ValueError:
            return True
        elapsed_ms = (self._clock() - self._background_since) * 1000
        return elapsed_ms >= required_ms

    def _date_satisfied(self, value: Optional[str]) -> bool:
        if not value:
            return True
        target = parse_date(value)
        if target is None:
            logger.warning("Unparsable delay date %r, treating as satisfied", value)
            return True
        return self._clock() >= target.timestamp()

    def _version_satisfied(self, value: Optional[str]) -> bool:
        if not value:
            return True
        return compare_versions(self.app_version, value) >= 0

    # =========================================================================
    # APP STATE OBSERVATIONS
    # =========================================================================

    def on_background(self) -> None:
        if self._background_since is None:
            self._background_since = self._clock()

    def on_foreground(self) -> None:
        self._background_since = None

    def on_app_start(self) -> None:
        """
        Called once per process start. A kill condition that survived to
        this start means the previous process ended without clearing it.
        """
        if any(c.kind is DelayConditionKind.KILL for c in self.storage.manifest.delay_conditions):
            self._was_killed = True

    def reset_kill_state(self) -> None:
        self._was_killed = False
