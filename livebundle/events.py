# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Events

Closed set of events emitted to the outer transport layer, one payload type
per kind. `breakingAvailable` is also delivered to `majorAvailable`
listeners, the legacy name older consumers still subscribe to.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Union

from .models import BundleInfo

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Names of events, as seen by listeners."""
    DOWNLOAD = "download"
    UPDATE_AVAILABLE = "updateAvailable"
    NO_NEED_UPDATE = "noNeedUpdate"
    DOWNLOAD_COMPLETE = "downloadComplete"
    DOWNLOAD_FAILED = "downloadFailed"
    BREAKING_AVAILABLE = "breakingAvailable"
    MAJOR_AVAILABLE = "majorAvailable"  # deprecated alias of BREAKING_AVAILABLE
    UPDATE_FAILED = "updateFailed"
    APP_RELOADED = "appReloaded"
    APP_READY = "appReady"


# =============================================================================
# PAYLOADS
# =============================================================================

@dataclass
class DownloadEvent:
    kind: ClassVar[EventKind] = EventKind.DOWNLOAD
    percent: int
    bundle: BundleInfo

    def to_dict(self) -> Dict[str, Any]:
        return {"percent": self.percent, "bundle": self.bundle.to_dict()}


@dataclass
class UpdateAvailableEvent:
    kind: ClassVar[EventKind] = EventKind.UPDATE_AVAILABLE
    bundle: BundleInfo

    def to_dict(self) -> Dict[str, Any]:
        return {"bundle": self.bundle.to_dict()}


@dataclass
class NoNeedUpdateEvent:
    kind: ClassVar[EventKind] = EventKind.NO_NEED_UPDATE
    bundle: BundleInfo

    def to_dict(self) -> Dict[str, Any]:
        return {"bundle": self.bundle.to_dict()}


@dataclass
class DownloadCompleteEvent:
    kind: ClassVar[EventKind] = EventKind.DOWNLOAD_COMPLETE
    bundle: BundleInfo

    def to_dict(self) -> Dict[str, Any]:
        return {"bundle": self.bundle.to_dict()}


@dataclass
class DownloadFailedEvent:
    kind: ClassVar[EventKind] = EventKind.DOWNLOAD_FAILED
    version: str

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version}


@dataclass
class BreakingAvailableEvent:
    kind: ClassVar[EventKind] = EventKind.BREAKING_AVAILABLE
    version: str

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version}


@dataclass
class UpdateFailedEvent:
    kind: ClassVar[EventKind] = EventKind.UPDATE_FAILED
    bundle: BundleInfo

    def to_dict(self) -> Dict[str, Any]:
        return {"bundle": self.bundle.to_dict()}


@dataclass
class AppReloadedEvent:
    kind: ClassVar[EventKind] = EventKind.APP_RELOADED

    def to_dict(self) -> Dict[str, Any]:
        return {}


@dataclass
class AppReadyEvent:
    kind: ClassVar[EventKind] = EventKind.APP_READY
    bundle: BundleInfo
    status: str = "OK"

    def to_dict(self) -> Dict[str, Any]:
        return {"bundle": self.bundle.to_dict(), "status": self.status}


UpdaterEvent = Union[
    DownloadEvent,
    UpdateAvailableEvent,
    NoNeedUpdateEvent,
    DownloadCompleteEvent,
    DownloadFailedEvent,
    BreakingAvailableEvent,
    UpdateFailedEvent,
    AppReloadedEvent,
    AppReadyEvent,
]

Listener = Callable[[UpdaterEvent], None]

# Which listener groups receive an event of each kind
_DELIVERY: Dict[EventKind, tuple] = {
    EventKind.DOWNLOAD: (EventKind.DOWNLOAD,),
    EventKind.UPDATE_AVAILABLE: (EventKind.UPDATE_AVAILABLE,),
    EventKind.NO_NEED_UPDATE: (EventKind.NO_NEED_UPDATE,),
    EventKind.DOWNLOAD_COMPLETE: (EventKind.DOWNLOAD_COMPLETE,),
    EventKind.DOWNLOAD_FAILED: (EventKind.DOWNLOAD_FAILED,),
    EventKind.BREAKING_AVAILABLE: (EventKind.BREAKING_AVAILABLE, EventKind.MAJOR_AVAILABLE),
    EventKind.MAJOR_AVAILABLE: (EventKind.MAJOR_AVAILABLE,),
    EventKind.UPDATE_FAILED: (EventKind.UPDATE_FAILED,),
    EventKind.APP_RELOADED: (EventKind.APP_RELOADED,),
    EventKind.APP_READY: (EventKind.APP_READY,),
}


@dataclass
class ListenerHandle:
    """Returned by add_listener; call remove() to unsubscribe."""
    _bus: "EventBus"
    _kind: EventKind
    _callback: Listener

    def remove(self) -> None:
        self._bus._remove(self._kind, self._callback)


@dataclass
class EventBus:
    """In-process listener registry."""
    _listeners: Dict[EventKind, List[Listener]] = field(default_factory=dict)

    def add_listener(self, kind: Union[EventKind, str], callback: Listener) -> ListenerHandle:
        kind = EventKind(kind)
        self._listeners.setdefault(kind, []).append(callback)
        return ListenerHandle(self, kind, callback)

    def emit(self, event: UpdaterEvent) -> None:
        for target in _DELIVERY[event.kind]:
            for callback in list(self._listeners.get(target, [])):
                try:
                    callback(event)
                except Exception as e:
                    logger.error("Error in %s listener: %s", target.value, e)

    def remove_listeners(self, kind: Union[EventKind, str]) -> None:
        self._listeners.pop(EventKind(kind), None)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def listener_count(self, kind: Union[EventKind, str]) -> int:
        return len(self._listeners.get(EventKind(kind), []))

    def _remove(self, kind: EventKind, callback: Listener) -> None:
        callbacks = self._listeners.get(kind)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)
