"""
session.py — The SOS activation state machine.

One AlertSession is one end-to-end alert: trigger, countdown, location read,
fan-out to contacts, then periodic location refresh until canceled.

═══════════════════════════════════════════════════════════════════════════
TRANSITION TABLE
═══════════════════════════════════════════════════════════════════════════

    (state,          event)               → handler
    ─────────────    ─────────────────    ───────────────────────────────
    IDLE             TRIGGER              start countdown (1 s repeating)
    COUNTING_DOWN    TICK                 n → n-1; at 0 retire timer,
                                          enter DISPATCHING, read location
    COUNTING_DOWN    CANCEL               → CANCELED
    DISPATCHING      LOCATION_RESOLVED    fan-out, then DISPATCH_COMPLETE
    DISPATCHING      CANCEL               → CANCELED before fan-out starts,
                                          → ENDED once it has started
    DISPATCHING      DISPATCH_COMPLETE    → ACTIVE, start refresh watch
    ACTIVE           LOCATION_REFRESHED   replace last_fix
    ACTIVE           CANCEL               → ENDED, stop refresh watch

Any other (state, event) pair is ignored. CANCELED and ENDED accept nothing.
A CANCELED session never handed an intent to the transport.

═══════════════════════════════════════════════════════════════════════════
STALE CALLBACKS
═══════════════════════════════════════════════════════════════════════════

Every timer or location callback is issued through ``_callback()``, which
captures the session id and the state it was issued in. When it fires it is
dropped unless the session is still the engine's current one AND still in
that state. A countdown tick that fires after cancel, or a refresh fix that
lands after the session ended, therefore never changes anything.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from backend.app.sos.collaborators import ContactSource, NoticeSink
from backend.app.sos.dispatcher import NotificationDispatcher
from backend.app.sos.location import (
    DEFAULT_REFRESH_SECONDS,
    LocationProvider,
    PendingRead,
    WatchHandle,
)
from backend.app.sos.models import (
    DEFAULT_COUNTDOWN_SECONDS,
    TICK_SECONDS,
    DeliveryStatus,
    DispatchReport,
    GeoFix,
    IntentKind,
    LocationResult,
    LocationUnavailable,
    Notice,
    NoticeKind,
    SessionState,
)
from backend.app.sos.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    TRIGGER            = "trigger"
    TICK               = "tick"
    LOCATION_RESOLVED  = "location_resolved"
    DISPATCH_COMPLETE  = "dispatch_complete"
    LOCATION_REFRESHED = "location_refreshed"
    CANCEL             = "cancel"


_S = SessionState
_E = SessionEvent

TRANSITIONS: Dict[Tuple[SessionState, SessionEvent], str] = {
    (_S.IDLE,          _E.TRIGGER):            "_start_countdown",
    (_S.COUNTING_DOWN, _E.TICK):               "_tick",
    (_S.COUNTING_DOWN, _E.CANCEL):             "_cancel_before_dispatch",
    (_S.DISPATCHING,   _E.LOCATION_RESOLVED):  "_dispatch",
    (_S.DISPATCHING,   _E.CANCEL):             "_cancel_dispatching",
    (_S.DISPATCHING,   _E.DISPATCH_COMPLETE):  "_activate",
    (_S.ACTIVE,        _E.LOCATION_REFRESHED): "_refresh_fix",
    (_S.ACTIVE,        _E.CANCEL):             "_end",
}


class AlertSession:
    """
    A single SOS activation. Owns its countdown timer and refresh watch and
    tears both down on every terminal transition.

    Built by AlertEngine; callers use ``trigger()`` and ``cancel()`` only.
    """

    def __init__(
        self,
        session_id: int,
        *,
        message_template: str,
        contacts: ContactSource,
        location: LocationProvider,
        dispatcher: NotificationDispatcher,
        scheduler: Scheduler,
        countdown_total: int = DEFAULT_COUNTDOWN_SECONDS,
        refresh_interval: float = DEFAULT_REFRESH_SECONDS,
        notify: Optional[NoticeSink] = None,
        is_current: Optional[Callable[[int], bool]] = None,
    ):
        if countdown_total < 0:
            raise ValueError(f"countdown_total must be >= 0, got {countdown_total}")
        self.session_id = session_id
        self.message_template = message_template
        self.countdown_total = countdown_total
        self.refresh_interval = refresh_interval

        self.state = SessionState.IDLE
        self.seconds_remaining = countdown_total
        self.last_fix: Optional[LocationResult] = None
        self.dispatched_to: Set[str] = set()
        self.notices: List[Notice] = []
        self.reports: List[DispatchReport] = []
        self.created_at = datetime.now(timezone.utc)
        self.activated_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.dispatch_started = False

        self._contacts = contacts
        self._location = location
        self._dispatcher = dispatcher
        self._scheduler = scheduler
        self._notify = notify
        self._is_current = is_current or (lambda sid: sid == self.session_id)
        self._countdown: Optional[TimerHandle] = None
        self._read: Optional[PendingRead] = None
        self._refresh: Optional[WatchHandle] = None

    # ── public verbs ──

    def trigger(self) -> bool:
        return self.handle(SessionEvent.TRIGGER)

    def cancel(self) -> bool:
        return self.handle(SessionEvent.CANCEL)

    def handle(self, event: SessionEvent, payload: Any = None) -> bool:
        """Apply one event. Returns False when the table has no entry for it."""
        name = TRANSITIONS.get((self.state, event))
        if name is None:
            logger.debug(
                "Ignoring %s in %s", event.value, self.state.value,
                extra=self._log_extra(),
            )
            return False
        getattr(self, name)(payload)
        return True

    @property
    def countdown_pending(self) -> bool:
        return self._countdown is not None

    @property
    def refresh_pending(self) -> bool:
        return self._refresh is not None

    # ── handlers ──

    def _start_countdown(self, _: Any) -> None:
        self._enter(SessionState.COUNTING_DOWN)
        self.seconds_remaining = self.countdown_total
        self._emit(
            NoticeKind.COUNTDOWN_STARTED,
            f"Emergency alert will be sent in {self.countdown_total} seconds. "
            "Tap again to cancel.",
        )
        if self.countdown_total == 0:
            self._begin_dispatch()
            return
        self._countdown = self._scheduler.call_every(
            TICK_SECONDS,
            self._callback(SessionEvent.TICK, SessionState.COUNTING_DOWN),
        )

    def _tick(self, _: Any) -> None:
        self.seconds_remaining -= 1
        logger.debug(
            "Countdown %d", self.seconds_remaining, extra=self._log_extra(),
        )
        if self.seconds_remaining <= 0:
            self.seconds_remaining = 0
            self._begin_dispatch()

    def _begin_dispatch(self) -> None:
        self._stop_countdown()
        self._enter(SessionState.DISPATCHING)
        self._read = self._location.acquire_once(
            self._callback(SessionEvent.LOCATION_RESOLVED, SessionState.DISPATCHING),
        )

    def _dispatch(self, result: LocationResult) -> None:
        self._read = None
        self.last_fix = result
        if isinstance(result, LocationUnavailable):
            self._emit(
                NoticeKind.LOCATION_UNAVAILABLE,
                "Could not get your location. Sending alert without location.",
            )
            if self.state is not SessionState.DISPATCHING:
                return  # canceled from the notice sink

        # From here on a cancel ends the alert instead of cancelling it
        self.dispatch_started = True
        report = self._dispatcher.dispatch(
            self._contacts.contacts(),
            result,
            self.message_template,
            exclude=frozenset(self.dispatched_to),
        )
        self.reports.append(report)

        if report.no_verified_contacts:
            self._emit(NoticeKind.NO_VERIFIED_CONTACTS, "No verified contacts available")

        for attempt in report.attempts:
            contact = attempt.intent.contact
            self.dispatched_to.add(contact.contact_id)
            if attempt.status == DeliveryStatus.FAILED:
                self._emit(
                    NoticeKind.DELIVERY_FAILED,
                    f"Could not reach {contact.name} by {attempt.intent.kind.value}: "
                    f"{attempt.error_message}",
                    contact_id=contact.contact_id,
                )
            elif attempt.intent.kind == IntentKind.SMS:
                self._emit(
                    NoticeKind.SMS_SENT,
                    f"SMS alert sent to {contact.name}",
                    contact_id=contact.contact_id,
                )
            else:
                self._emit(
                    NoticeKind.CALL_STARTED,
                    f"Call alert initiated to {contact.name}",
                    contact_id=contact.contact_id,
                )

        self.handle(SessionEvent.DISPATCH_COMPLETE)

    def _activate(self, _: Any) -> None:
        self._enter(SessionState.ACTIVE)
        self.activated_at = datetime.now(timezone.utc)
        self._refresh = self._location.start_watching(
            self._callback(SessionEvent.LOCATION_REFRESHED, SessionState.ACTIVE),
            interval=self.refresh_interval,
        )
        self._emit(NoticeKind.ALERT_ACTIVE, "Alert sent! Sharing location...")

    def _refresh_fix(self, fix: GeoFix) -> None:
        self.last_fix = fix
        self._emit(
            NoticeKind.LOCATION_UPDATED,
            f"Updated location: {fix.latitude:.6f}, {fix.longitude:.6f}",
        )

    def _cancel_before_dispatch(self, _: Any) -> None:
        self._teardown()
        self._finish(SessionState.CANCELED)
        self._emit(NoticeKind.CANCELED, "Emergency alert canceled")

    def _cancel_dispatching(self, payload: Any) -> None:
        if self.dispatch_started:
            self._end(payload)
        else:
            self._cancel_before_dispatch(payload)

    def _end(self, _: Any) -> None:
        self._teardown()
        self._finish(SessionState.ENDED)
        self._emit(NoticeKind.ENDED, "Emergency alert ended. Location sharing stopped.")

    # ── helpers ──

    def _callback(self, event: SessionEvent, issued_in: SessionState) -> Callable[..., None]:
        issued_for = self.session_id

        def fire(payload: Any = None) -> None:
            if not self._is_current(issued_for) or self.state is not issued_in:
                logger.debug(
                    "Dropping stale %s issued in %s (now %s)",
                    event.value, issued_in.value, self.state.value,
                    extra=self._log_extra(),
                )
                return
            self.handle(event, payload)

        return fire

    def _enter(self, state: SessionState) -> None:
        logger.info(
            "Session %d: %s → %s", self.session_id, self.state.value, state.value,
            extra=self._log_extra(state=state.value),
        )
        self.state = state

    def _finish(self, state: SessionState) -> None:
        self._enter(state)
        self.finished_at = datetime.now(timezone.utc)

    def _stop_countdown(self) -> None:
        self._scheduler.cancel(self._countdown)
        self._countdown = None

    def _teardown(self) -> None:
        self._stop_countdown()
        self._location.release(self._read)
        self._read = None
        self._location.stop_watching(self._refresh)
        self._refresh = None

    def _emit(self, kind: NoticeKind, message: str, contact_id: Optional[str] = None) -> None:
        notice = Notice(kind=kind, message=message, contact_id=contact_id)
        self.notices.append(notice)
        if self._notify is None:
            return
        try:
            self._notify(notice)
        except Exception:
            logger.exception("Notice sink failed for %s", kind.value, extra=self._log_extra())

    def _log_extra(self, **extra: Any) -> Dict[str, Any]:
        return {"session_id": self.session_id, **extra}

    # ── serialisation ──

    def to_dict(self) -> Dict[str, Any]:
        fix = self.last_fix
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "countdown_total": self.countdown_total,
            "seconds_remaining": self.seconds_remaining,
            "last_fix": fix.to_dict() if fix is not None else None,
            "message_template": self.message_template,
            "dispatch_started": self.dispatch_started,
            "dispatched_to": sorted(self.dispatched_to),
            "created_at": self.created_at.isoformat(),
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "notices": [n.to_dict() for n in self.notices],
            "reports": [r.to_dict() for r in self.reports],
        }
