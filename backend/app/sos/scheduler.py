"""
scheduler.py — Single-threaded timers for the SOS engine.

The engine never sleeps and never spawns threads. Every suspension point
(countdown tick, location timeout, refresh interval) is a timer registered
on a Scheduler and fired later on the same event loop.

Two implementations:
    AsyncioScheduler       — wraps loop.call_later (used by the service)
    VirtualClockScheduler  — deterministic clock advanced by hand (used by
                             simulations and tests)

Both expose:
    now()                       → float seconds on the scheduler's clock
    call_later(delay, fn)       → TimerHandle, fires once
    call_every(interval, fn)    → TimerHandle, fires until cancelled
    cancel(handle)              → idempotent
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class TimerHandle:
    """A pending one-shot or repeating timer."""
    callback: Callable[[], None]
    due: float
    interval: Optional[float] = None
    cancelled: bool = False
    _native: Any = field(default=None, repr=False)

    @property
    def repeating(self) -> bool:
        return self.interval is not None

    def cancel(self) -> None:
        self.cancelled = True
        if self._native is not None:
            self._native.cancel()
            self._native = None


class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle: ...

    def cancel(self, handle: Optional[TimerHandle]) -> None: ...


# ═══════════════════════════════════════════════════════════════════════════
# asyncio-backed
# ═══════════════════════════════════════════════════════════════════════════

class AsyncioScheduler:
    """
    Timers on an asyncio event loop.

    If no loop is given, the running loop is looked up on every call, so
    the scheduler can be created at import time and used from request
    handlers.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(callback=callback, due=self.now() + delay)
        handle._native = self.loop.call_later(delay, self._fire, handle)
        return handle

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        handle = TimerHandle(
            callback=callback, due=self.now() + interval, interval=interval,
        )
        handle._native = self.loop.call_later(interval, self._fire, handle)
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is not None:
            handle.cancel()

    def _fire(self, handle: TimerHandle) -> None:
        if handle.cancelled:
            return
        if handle.repeating:
            # Re-arm first so the callback may cancel its own timer
            handle.due += handle.interval
            handle._native = self.loop.call_later(
                handle.interval, self._fire, handle,
            )
        else:
            handle._native = None
        handle.callback()


# ═══════════════════════════════════════════════════════════════════════════
# Virtual clock
# ═══════════════════════════════════════════════════════════════════════════

class VirtualClockScheduler:
    """
    A clock that only moves when ``advance()`` is called.

    Timers due at the same instant fire in registration order. Callbacks
    run synchronously inside ``advance()``; exceptions propagate.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._seq = itertools.count()
        self._queue: List[Tuple[float, int, TimerHandle]] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(callback=callback, due=self._now + max(delay, 0.0))
        self._push(handle)
        return handle

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        handle = TimerHandle(
            callback=callback, due=self._now + interval, interval=interval,
        )
        self._push(handle)
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is not None:
            handle.cancel()

    @property
    def pending(self) -> int:
        """Number of live (not cancelled) timers."""
        return sum(1 for _, _, h in self._queue if not h.cancelled)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing every timer that falls due."""
        deadline = self._now + seconds
        while self._queue and self._queue[0][0] <= deadline:
            due, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = due
            if handle.repeating:
                handle.due = due + handle.interval
                self._push(handle)
            handle.callback()
        self._now = deadline

    def _push(self, handle: TimerHandle) -> None:
        heapq.heappush(self._queue, (handle.due, next(self._seq), handle))
