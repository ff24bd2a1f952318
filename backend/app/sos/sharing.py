"""
sharing.py — Continuous location sharing, independent of any SOS session.

    start()    fresh read + continuous tracking; a failed first read turns
               sharing back off
    refresh()  one fresh read on demand; a failure keeps the last fix
    stop()     clears the watch and abandons any read in flight

The latest fix is what trusted contacts would see. Tracking errors after the
first read are logged and the watch keeps running.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from backend.app.sos.collaborators import NoticeSink
from backend.app.sos.location import LocationProvider, PendingRead, WatchHandle
from backend.app.sos.models import (
    GeoFix,
    LocationResult,
    LocationUnavailable,
    Notice,
    NoticeKind,
)

logger = logging.getLogger(__name__)


class LocationSharing:
    def __init__(self, location: LocationProvider, notify: Optional[NoticeSink] = None):
        self._location = location
        self._notify = notify
        self.location: Optional[GeoFix] = None
        self.last_error: Optional[LocationUnavailable] = None
        self._watch: Optional[WatchHandle] = None
        self._read: Optional[PendingRead] = None

    @property
    def enabled(self) -> bool:
        return self._watch is not None

    def start(self) -> bool:
        """Turn sharing on. Returns False when it already was."""
        if self.enabled:
            return False
        self.last_error = None
        self._watch = self._location.track(self._on_update)
        logger.info("Location sharing on (watch %d)", self._watch.watch_id)
        self._read = self._location.acquire_once(self._on_first_read, max_age=0.0)
        return True

    def stop(self) -> bool:
        """Turn sharing off. Returns False when it already was."""
        if not self.enabled:
            return False
        self._location.release(self._read)
        self._read = None
        self._location.stop_watching(self._watch)
        self._watch = None
        logger.info("Location sharing off")
        return True

    def refresh(self) -> bool:
        """Request one fresh read while sharing. Returns False when sharing is off."""
        if not self.enabled:
            return False
        self._location.release(self._read)
        self._read = self._location.acquire_once(self._on_refresh, max_age=0.0)
        return True

    # ── callbacks ──

    def _on_update(self, fix: GeoFix) -> None:
        self.location = fix

    def _on_first_read(self, result: LocationResult) -> None:
        self._read = None
        if isinstance(result, GeoFix):
            self.location = result
            return
        self.last_error = result
        self.stop()
        self._emit(
            NoticeKind.LOCATION_UNAVAILABLE,
            "Could not get your location. Please check your location permissions.",
        )

    def _on_refresh(self, result: LocationResult) -> None:
        self._read = None
        if isinstance(result, GeoFix):
            self.location = result
            self._emit(NoticeKind.LOCATION_UPDATED, "Location updated")
        else:
            self.last_error = result
            self._emit(NoticeKind.LOCATION_UNAVAILABLE, "Could not update your location")

    def _emit(self, kind: NoticeKind, message: str) -> None:
        if self._notify is None:
            return
        try:
            self._notify(Notice(kind=kind, message=message))
        except Exception:
            logger.exception("Notice sink failed for %s", kind.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "location": self.location.to_dict() if self.location else None,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }
