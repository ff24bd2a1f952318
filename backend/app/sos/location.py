"""
location.py — Best-effort location acquisition and refresh.

═══════════════════════════════════════════════════════════════════════════
POLICY
═══════════════════════════════════════════════════════════════════════════

    Operation        Default     Failure behaviour
    ─────────────    ────────    ──────────────────────────────────────
    acquire_once     5 s         resolves LocationUnavailable, never raises
                     10 s age    cached fix younger than max_age reused
    start_watching   30 s        failed reads logged, watch keeps running
    track            continuous  source errors logged, watch keeps running
    release          —           deadline cancelled, late answer dropped
    stop_watching    —           idempotent, unknown handles ignored,
                                 releases the poll read in flight

``acquire_once`` settles exactly once: whichever of (source success,
source error, deadline timer) happens first wins and the others are dropped.
The deadline timer is what guarantees dispatch is never held up by a
position source that never answers.

Every read returns a PendingRead. ``release()`` abandons it: the deadline
timer is cancelled and a late answer from the source is dropped. Stopping a
poll watch releases its in-flight read the same way.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from backend.app.core.errors import PositionError, PositionErrorCode
from backend.app.sos.collaborators import PositionOptions, PositionSource
from backend.app.sos.models import GeoFix, LocationResult, LocationUnavailable
from backend.app.sos.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_MAX_AGE_SECONDS = 10.0
DEFAULT_REFRESH_SECONDS = 30.0


@dataclass(eq=False)
class WatchHandle:
    """Returned by start_watching / track; pass back to stop_watching."""
    watch_id: int
    kind: str  # "poll" | "track"
    stopped: bool = False
    _timer: Optional[TimerHandle] = field(default=None, repr=False)
    _source_watch_id: Optional[int] = field(default=None, repr=False)
    _read: Optional["PendingRead"] = field(default=None, repr=False)


@dataclass(eq=False)
class PendingRead:
    """Returned by acquire_once; pass to release() to abandon the read."""
    settled: bool = False
    _deadline: Optional[TimerHandle] = field(default=None, repr=False)


def _as_unavailable(error: Exception) -> LocationUnavailable:
    if isinstance(error, PositionError):
        return LocationUnavailable(reason=error.code, message=error.message)
    return LocationUnavailable(
        reason=PositionErrorCode.POSITION_UNAVAILABLE, message=str(error),
    )


class LocationProvider:
    """Wraps a PositionSource with timeout, caching and watch bookkeeping."""

    def __init__(
        self,
        source: PositionSource,
        scheduler: Scheduler,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_age: float = DEFAULT_MAX_AGE_SECONDS,
        high_accuracy: bool = True,
    ):
        self.source = source
        self.scheduler = scheduler
        self.timeout = timeout
        self.max_age = max_age
        self.high_accuracy = high_accuracy
        self.last_fix: Optional[GeoFix] = None
        self._last_fix_at: Optional[float] = None
        self._ids = itertools.count(1)
        self._watches: Dict[int, WatchHandle] = {}

    # ── single-shot ──

    def acquire_once(
        self,
        on_result: Callable[[LocationResult], None],
        timeout: Optional[float] = None,
        max_age: Optional[float] = None,
    ) -> PendingRead:
        """
        Read the position once and pass GeoFix or LocationUnavailable to
        ``on_result``. Calls ``on_result`` exactly once, at the latest
        ``timeout`` seconds from now, unless the read is released first.
        """
        timeout = self.timeout if timeout is None else timeout
        max_age = self.max_age if max_age is None else max_age

        cached = self._fresh_fix(max_age)
        if cached is not None:
            logger.debug("Reusing cached fix (max_age=%.1fs)", max_age)
            on_result(cached)
            return PendingRead(settled=True)

        read = PendingRead()

        def settle(result: LocationResult) -> None:
            if read.settled:
                return
            read.settled = True
            self.scheduler.cancel(read._deadline)
            read._deadline = None
            if isinstance(result, GeoFix):
                self._remember(result)
            else:
                logger.warning(
                    "Location unavailable: %s %s",
                    result.reason.name, result.message,
                )
            on_result(result)

        read._deadline = self.scheduler.call_later(
            timeout,
            lambda: settle(LocationUnavailable(
                reason=PositionErrorCode.TIMEOUT,
                message=f"no position within {timeout:.1f}s",
            )),
        )

        options = PositionOptions(
            enable_high_accuracy=self.high_accuracy,
            timeout=timeout,
            maximum_age=max_age,
        )
        try:
            self.source.get_current_position(
                settle,
                lambda error: settle(_as_unavailable(error)),
                options,
            )
        except Exception as exc:
            logger.error("Position source raised: %s", exc)
            settle(_as_unavailable(exc))
        return read

    def release(self, read: Optional[PendingRead]) -> None:
        """Abandon a read: no result is delivered. Settled reads are ignored."""
        if read is None or read.settled:
            return
        read.settled = True
        self.scheduler.cancel(read._deadline)
        read._deadline = None
        logger.debug("Released pending location read")

    # ── recurring ──

    def start_watching(
        self,
        on_update: Callable[[GeoFix], None],
        interval: float = DEFAULT_REFRESH_SECONDS,
    ) -> WatchHandle:
        """Poll every ``interval`` seconds; only successful reads reach ``on_update``."""
        handle = WatchHandle(watch_id=next(self._ids), kind="poll")

        def deliver(result: LocationResult) -> None:
            if handle.stopped:
                return
            if isinstance(result, GeoFix):
                on_update(result)
            else:
                logger.info("Refresh read failed (%s); watch continues", result.reason.name)

        def poll() -> None:
            # Every poll is a fresh read; the cache never answers a refresh
            self.release(handle._read)
            handle._read = self.acquire_once(deliver, max_age=0.0)

        handle._timer = self.scheduler.call_every(interval, poll)
        self._watches[handle.watch_id] = handle
        logger.info("Location refresh every %.0fs (watch %d)", interval, handle.watch_id)
        return handle

    def track(self, on_update: Callable[[GeoFix], None]) -> WatchHandle:
        """Continuous tracking through the source's own watch_position."""
        handle = WatchHandle(watch_id=next(self._ids), kind="track")

        def on_position(fix: GeoFix) -> None:
            if handle.stopped:
                return
            self._remember(fix)
            on_update(fix)

        def on_error(error: Exception) -> None:
            logger.warning("Tracking read failed: %s", error)

        handle._source_watch_id = self.source.watch_position(
            on_position,
            on_error,
            PositionOptions(
                enable_high_accuracy=True,
                timeout=self.timeout,
                maximum_age=self.max_age,
            ),
        )
        self._watches[handle.watch_id] = handle
        return handle

    def stop_watching(self, handle: Optional[WatchHandle]) -> None:
        """Stop a watch. Unknown or already stopped handles are ignored."""
        if handle is None or handle.stopped:
            return
        if self._watches.pop(handle.watch_id, None) is None:
            return
        handle.stopped = True
        if handle._timer is not None:
            self.scheduler.cancel(handle._timer)
            handle._timer = None
        self.release(handle._read)
        handle._read = None
        if handle._source_watch_id is not None:
            self.source.clear_watch(handle._source_watch_id)
            handle._source_watch_id = None
        logger.info("Stopped %s watch %d", handle.kind, handle.watch_id)

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    # ── cache ──

    def _remember(self, fix: GeoFix) -> None:
        self.last_fix = fix
        self._last_fix_at = self.scheduler.now()

    def _fresh_fix(self, max_age: float) -> Optional[GeoFix]:
        if self.last_fix is None or self._last_fix_at is None or max_age <= 0:
            return None
        if self.scheduler.now() - self._last_fix_at <= max_age:
            return self.last_fix
        return None
