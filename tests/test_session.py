"""
test_session.py — SOS activation lifecycle end to end on a virtual clock.

Covers:
    • Countdown ticks and the toggle (trigger while live = cancel)
    • Dispatch with and without a location fix
    • At-most-once dispatch per contact per session
    • Refresh watch while active; teardown on every terminal state
    • Stale-callback guards (late ticks, late location reads, old sessions)
    • Notices and message-template snapshotting

Run with:
    pytest tests/test_session.py -v
"""

from __future__ import annotations

from typing import Callable, List, Tuple

import pytest

from backend.app.core.errors import PositionError, PositionErrorCode
from backend.app.sos.collaborators import (
    InMemoryContactSource,
    SimulatedPositionSource,
    StaticMessageTemplate,
)
from backend.app.sos.dispatcher import NotificationDispatcher
from backend.app.sos.engine import AlertEngine
from backend.app.sos.location import LocationProvider
from backend.app.sos.models import (
    DeliveryAttempt,
    DeliveryStatus,
    DispatchIntent,
    GeoFix,
    IntentKind,
    LocationUnavailable,
    Notice,
    NoticeKind,
    NotificationPreference,
    SessionState,
    TrustedContact,
)
from backend.app.sos.scheduler import VirtualClockScheduler
from backend.app.sos.session import TRANSITIONS, AlertSession, SessionEvent


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

LAT, LNG = 37.422, -122.084
MESSAGE = "I need help."


def _contact(cid: str, preference: NotificationPreference, verified: bool = True) -> TrustedContact:
    return TrustedContact(
        contact_id=cid,
        name=f"Contact {cid}",
        phone="+1 555 0100",
        notification_preference=preference,
        verified=verified,
    )


SCENARIO_CONTACTS = [
    _contact("A", NotificationPreference.BOTH, verified=True),
    _contact("B", NotificationPreference.BOTH, verified=False),
    _contact("C", NotificationPreference.SMS, verified=True),
]


class RecordingTransport:
    def __init__(self, fail: bool = False):
        self.sent: List[DispatchIntent] = []
        self.fail = fail
        self.on_send: Callable[[DispatchIntent], None] = lambda intent: None

    def send(self, intent: DispatchIntent) -> DeliveryAttempt:
        self.on_send(intent)
        self.sent.append(intent)
        status = DeliveryStatus.FAILED if self.fail else DeliveryStatus.DELIVERED
        return DeliveryAttempt(intent=intent, status=status, error_message="x" if self.fail else None)

    @property
    def summary(self) -> List[Tuple[str, IntentKind]]:
        return [(i.contact.contact_id, i.kind) for i in self.sent]


class DeferredPositionSource:
    """Holds every read until the test resolves it."""

    def __init__(self):
        self.pending: List[tuple] = []

    def get_current_position(self, on_success, on_error, options):
        self.pending.append((on_success, on_error))

    def watch_position(self, on_update, on_error, options):
        return 0

    def clear_watch(self, watch_id):
        pass

    def resolve(self, latitude: float = LAT, longitude: float = LNG) -> None:
        pending, self.pending = self.pending, []
        for on_success, _ in pending:
            on_success(GeoFix(latitude, longitude))

    def reject(self, code: PositionErrorCode = PositionErrorCode.PERMISSION_DENIED) -> None:
        pending, self.pending = self.pending, []
        for _, on_error in pending:
            on_error(PositionError(code))


class Harness:
    def __init__(self, contacts=SCENARIO_CONTACTS, source=None, countdown=3, fail=False):
        self.clock = VirtualClockScheduler()
        self.source = source or SimulatedPositionSource(self.clock, LAT, LNG, latency=0.1)
        self.location = LocationProvider(self.source, self.clock, timeout=5.0, max_age=10.0)
        self.transport = RecordingTransport(fail=fail)
        self.contacts = InMemoryContactSource(contacts)
        self.templates = StaticMessageTemplate(MESSAGE)
        self.notices: List[Notice] = []
        self.engine = AlertEngine(
            contacts=self.contacts,
            templates=self.templates,
            location=self.location,
            dispatcher=NotificationDispatcher(self.transport),
            scheduler=self.clock,
            countdown_total=countdown,
            refresh_interval=30.0,
            notify=self.notices.append,
        )

    def notice_kinds(self) -> List[NoticeKind]:
        return [n.kind for n in self.notices]


@pytest.fixture
def h() -> Harness:
    return Harness()


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Transition table
# ═══════════════════════════════════════════════════════════════════════════

class TestTransitionTable:
    """The table is the only place transitions are defined."""

    def test_terminal_states_accept_nothing(self):
        for state, _ in TRANSITIONS:
            assert not state.is_terminal

    def test_every_handler_exists(self):
        for name in TRANSITIONS.values():
            assert callable(getattr(AlertSession, name))

    def test_cancel_defined_for_every_live_state(self):
        for state in SessionState:
            if state.is_live:
                assert (state, SessionEvent.CANCEL) in TRANSITIONS

    def test_unlisted_event_is_ignored(self, h):
        session = h.engine.trigger()
        assert session.handle(SessionEvent.DISPATCH_COMPLETE) is False
        assert session.state == SessionState.COUNTING_DOWN

    def test_negative_countdown_rejected(self):
        with pytest.raises(ValueError):
            Harness(countdown=-1).engine.trigger()


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Countdown
# ═══════════════════════════════════════════════════════════════════════════

class TestCountdown:
    """Test the countdown phase."""

    def test_trigger_starts_countdown(self, h):
        session = h.engine.trigger()
        assert session.state == SessionState.COUNTING_DOWN
        assert session.seconds_remaining == 3
        assert session.countdown_pending
        assert h.notices[0].kind == NoticeKind.COUNTDOWN_STARTED
        assert "3 seconds" in h.notices[0].message

    def test_ticks_once_per_second(self, h):
        session = h.engine.trigger()
        h.clock.advance(1.0)
        assert session.seconds_remaining == 2
        h.clock.advance(1.0)
        assert session.seconds_remaining == 1
        assert session.state == SessionState.COUNTING_DOWN
        assert h.transport.sent == []

    def test_reaches_zero_before_any_dispatch(self, h):
        seen = []
        h.transport.on_send = lambda intent: seen.append(h.engine.session.seconds_remaining)
        h.engine.trigger()
        h.clock.advance(3.5)
        assert seen and all(s == 0 for s in seen)

    def test_countdown_timer_retired_at_zero(self, h):
        session = h.engine.trigger()
        h.clock.advance(3.0)
        assert session.state == SessionState.DISPATCHING
        assert not session.countdown_pending

    def test_zero_countdown_dispatches_immediately(self):
        h = Harness(countdown=0)
        session = h.engine.trigger()
        assert session.state == SessionState.DISPATCHING
        assert not session.countdown_pending
        h.clock.advance(0.2)
        assert session.state == SessionState.ACTIVE
        assert len(h.transport.sent) == 3

    def test_default_countdown_is_three_seconds(self, h):
        assert h.engine.trigger().countdown_total == 3


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Cancel / toggle
# ═══════════════════════════════════════════════════════════════════════════

class TestCancelDuringCountdown:
    """Cancel before the countdown reaches zero."""

    @pytest.mark.parametrize("elapsed", [0.0, 0.5, 1.0, 2.0, 2.9])
    def test_cancel_at_any_point_sends_nothing(self, h, elapsed):
        session = h.engine.trigger()
        h.clock.advance(elapsed)
        h.engine.cancel()
        h.clock.advance(60)
        assert session.state == SessionState.CANCELED
        assert h.transport.sent == []
        assert session.dispatched_to == set()

    def test_second_trigger_is_cancel(self, h):
        first = h.engine.trigger()
        h.clock.advance(1.0)
        second = h.engine.trigger()
        assert second is first
        assert first.state == SessionState.CANCELED
        assert h.engine.generation == 1
        h.clock.advance(10)
        assert h.transport.sent == []

    def test_cancel_notice(self, h):
        h.engine.trigger()
        h.engine.cancel()
        assert h.notices[-1].kind == NoticeKind.CANCELED
        assert h.notices[-1].message == "Emergency alert canceled"

    def test_cancel_releases_all_timers(self, h):
        session = h.engine.trigger()
        h.clock.advance(1.0)
        h.engine.cancel()
        assert not session.countdown_pending
        assert h.clock.pending == 0

    def test_cancel_with_nothing_live_is_noop(self, h):
        assert h.engine.cancel() is None
        assert h.engine.state == SessionState.IDLE

    def test_cancel_twice_is_noop(self, h):
        session = h.engine.trigger()
        h.engine.cancel()
        h.engine.cancel()
        assert session.state == SessionState.CANCELED
        assert h.notice_kinds().count(NoticeKind.CANCELED) == 1

    def test_late_tick_after_cancel_is_dropped(self, h):
        session = h.engine.trigger()
        tick = session._countdown.callback
        h.engine.cancel()
        tick()
        assert session.state == SessionState.CANCELED
        assert session.seconds_remaining == 3


class TestCancelWhileLocating:
    """Cancel after zero but before the location read came back."""

    def test_late_fix_does_not_dispatch(self):
        source = DeferredPositionSource()
        h = Harness(source=source)
        session = h.engine.trigger()
        h.clock.advance(3.0)
        assert session.state == SessionState.DISPATCHING
        h.engine.trigger()  # toggle → cancel
        assert session.state == SessionState.CANCELED
        source.resolve()
        h.clock.advance(10)  # deadline fires too
        assert h.transport.sent == []
        assert session.last_fix is None

    def test_cancel_releases_location_deadline(self):
        h = Harness(source=DeferredPositionSource())
        session = h.engine.trigger()
        h.clock.advance(3.0)
        assert h.clock.pending == 1  # the read's deadline
        h.engine.cancel()
        assert session.state == SessionState.CANCELED
        assert h.clock.pending == 0

    def test_cancel_from_location_unavailable_notice_sends_nothing(self):
        h = Harness(source=DeferredPositionSource())

        def sink(notice):
            h.notices.append(notice)
            if notice.kind == NoticeKind.LOCATION_UNAVAILABLE:
                h.engine.cancel()

        h.engine.notify = sink
        session = h.engine.trigger()
        h.clock.advance(3.0)
        h.source.reject()
        assert session.state == SessionState.CANCELED
        assert h.transport.sent == []
        assert session.reports == []
        assert not session.dispatch_started


class TestCancelDuringFanOut:
    """Cancel once intents have started going out ends the alert."""

    def test_cancel_from_notice_sink_ends_session(self):
        h = Harness()

        def sink(notice):
            h.notices.append(notice)
            if notice.kind == NoticeKind.SMS_SENT:
                h.engine.cancel()

        h.engine.notify = sink
        session = h.engine.trigger()
        h.clock.advance(3.5)
        assert session.state == SessionState.ENDED
        assert session.dispatch_started
        assert len(h.transport.sent) == 3
        assert session.dispatched_to == {"A", "C"}
        assert NoticeKind.CANCELED not in h.notice_kinds()
        assert h.notice_kinds().count(NoticeKind.ENDED) == 1
        assert not session.refresh_pending
        assert h.clock.pending == 0

    def test_cancel_from_transport_ends_session(self):
        h = Harness()
        h.transport.on_send = lambda intent: h.engine.cancel()
        session = h.engine.trigger()
        h.clock.advance(3.5)
        assert session.state == SessionState.ENDED
        assert len(h.transport.sent) == 3
        assert session.reports[0].delivered == 3
        assert h.notice_kinds().count(NoticeKind.ENDED) == 1
        h.clock.advance(60)
        assert h.location.active_watches == 0

    def test_canceled_session_never_reached_transport(self, h):
        session = h.engine.trigger()
        h.clock.advance(3.0)
        h.engine.cancel()
        h.clock.advance(60)
        assert session.state == SessionState.CANCELED
        assert not session.dispatch_started
        assert h.transport.sent == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Dispatch
# ═══════════════════════════════════════════════════════════════════════════

class TestDispatch:
    """Dispatch at countdown expiry."""

    def test_scenario_location_failing(self):
        h = Harness(source=DeferredPositionSource())
        session = h.engine.trigger()
        h.clock.advance(3.0)
        h.source.reject(PositionErrorCode.PERMISSION_DENIED)
        assert h.transport.summary == [
            ("A", IntentKind.SMS),
            ("A", IntentKind.CALL),
            ("C", IntentKind.SMS),
        ]
        assert all(i.text == "I need help. Location unavailable" for i in h.transport.sent)
        assert session.state == SessionState.ACTIVE
        assert isinstance(session.last_fix, LocationUnavailable)
        assert NoticeKind.LOCATION_UNAVAILABLE in h.notice_kinds()

    def test_location_timeout_still_dispatches(self):
        h = Harness(source=DeferredPositionSource())
        session = h.engine.trigger()
        h.clock.advance(3.0)
        h.clock.advance(4.9)
        assert h.transport.sent == []
        h.clock.advance(0.1)
        assert len(h.transport.sent) == 3
        assert session.last_fix.reason == PositionErrorCode.TIMEOUT

    def test_fix_included_in_text(self, h):
        session = h.engine.trigger()
        h.clock.advance(3.5)
        assert session.state == SessionState.ACTIVE
        assert h.transport.sent[0].text == (
            "I need help. Location: 37.422000, -122.084000"
        )
        assert isinstance(session.last_fix, GeoFix)

    def test_unverified_contact_never_contacted(self, h):
        h.engine.trigger()
        h.clock.advance(120)
        assert "B" not in {i.contact.contact_id for i in h.transport.sent}

    def test_dispatched_to_records_contacts(self, h):
        session = h.engine.trigger()
        h.clock.advance(3.5)
        assert session.dispatched_to == {"A", "C"}

    def test_per_contact_notices(self, h):
        h.engine.trigger()
        h.clock.advance(3.5)
        messages = [n.message for n in h.notices]
        assert "SMS alert sent to Contact A" in messages
        assert "Call alert initiated to Contact A" in messages
        assert "SMS alert sent to Contact C" in messages
        assert h.notices[-1].kind == NoticeKind.ALERT_ACTIVE

    def test_no_verified_contacts_is_observable(self):
        h = Harness(contacts=[_contact("B", NotificationPreference.BOTH, verified=False)])
        session = h.engine.trigger()
        h.clock.advance(3.5)
        assert h.transport.sent == []
        assert session.state == SessionState.ACTIVE
        assert NoticeKind.NO_VERIFIED_CONTACTS in h.notice_kinds()
        assert NoticeKind.DELIVERY_FAILED not in h.notice_kinds()

    def test_transport_failure_keeps_session_going(self):
        h = Harness(fail=True)
        session = h.engine.trigger()
        h.clock.advance(3.5)
        assert len(h.transport.sent) == 3
        assert session.state == SessionState.ACTIVE
        assert h.notice_kinds().count(NoticeKind.DELIVERY_FAILED) == 3
        assert NoticeKind.NO_VERIFIED_CONTACTS not in h.notice_kinds()

    def test_contacts_read_at_dispatch_time(self, h):
        h.engine.trigger()
        h.clock.advance(1.0)
        h.contacts.verify("B")
        h.clock.advance(2.5)
        assert ("B", IntentKind.SMS) in h.transport.summary

    def test_template_snapshot_at_creation(self, h):
        h.engine.trigger()
        h.templates.text = "Changed mid-session"
        h.clock.advance(3.5)
        assert all(i.text.startswith(MESSAGE) for i in h.transport.sent)

    def test_notice_sink_failure_does_not_break_session(self):
        h = Harness()

        def broken(notice):
            raise RuntimeError("toast crashed")

        h.engine.notify = broken
        session = h.engine.trigger()
        h.clock.advance(3.5)
        assert session.state == SessionState.ACTIVE
        assert len(h.transport.sent) == 3


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Active phase
# ═══════════════════════════════════════════════════════════════════════════

class TestActive:
    """Refresh while active and ending the alert."""

    def test_refresh_replaces_fix(self, h):
        session = h.engine.trigger()
        h.clock.advance(3.5)
        first = session.last_fix
        h.source.move_to(40.0, -70.0)
        h.clock.advance(30)
        assert session.last_fix is not first
        assert (session.last_fix.latitude, session.last_fix.longitude) == (40.0, -70.0)
        assert NoticeKind.LOCATION_UPDATED in h.notice_kinds()

    def test_refresh_failure_keeps_previous_fix(self, h):
        session = h.engine.trigger()
        h.clock.advance(3.5)
        first = session.last_fix
        h.source.fail_with(PositionErrorCode.TIMEOUT)
        h.clock.advance(90)
        assert session.last_fix is first
        assert session.state == SessionState.ACTIVE

    def test_at_most_once_per_contact(self, h):
        h.engine.trigger()
        h.clock.advance(3.5)
        h.clock.advance(300)
        assert h.transport.summary.count(("A", IntentKind.SMS)) == 1
        assert h.transport.summary.count(("A", IntentKind.CALL)) == 1
        assert len(h.transport.sent) == 3

    def test_only_refresh_timer_while_active(self, h):
        session = h.engine.trigger()
        h.clock.advance(3.5)
        assert not session.countdown_pending
        assert session.refresh_pending
        assert h.location.active_watches == 1

    def test_cancel_ends_and_stops_refresh(self, h):
        session = h.engine.trigger()
        h.clock.advance(3.5)
        h.engine.trigger()  # toggle while active → end
        assert session.state == SessionState.ENDED
        assert not session.refresh_pending
        assert h.location.active_watches == 0
        assert h.clock.pending == 0
        assert h.notices[-1].kind == NoticeKind.ENDED

    def test_stale_watch_result_after_end(self):
        source = DeferredPositionSource()
        h = Harness(source=source)
        session = h.engine.trigger()
        h.clock.advance(3.0)
        source.resolve(LAT, LNG)
        fix_at_activation = session.last_fix
        h.clock.advance(30)  # refresh poll issued, read pending
        assert source.pending
        h.engine.cancel()
        assert h.clock.pending == 0  # refresh timer and the read's deadline
        source.resolve(1.0, 2.0)
        h.clock.advance(10)
        assert session.state == SessionState.ENDED
        assert session.last_fix is fix_at_activation


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: New sessions
# ═══════════════════════════════════════════════════════════════════════════

class TestRetrigger:
    """Each trigger after a terminal state is a new session."""

    def test_new_session_after_cancel(self, h):
        first = h.engine.trigger()
        h.engine.cancel()
        second = h.engine.trigger()
        assert second is not first
        assert second.session_id == first.session_id + 1
        assert second.state == SessionState.COUNTING_DOWN
        assert first.state == SessionState.CANCELED

    def test_dispatch_history_not_carried_over(self, h):
        first = h.engine.trigger()
        h.clock.advance(3.5)
        h.engine.cancel()
        second = h.engine.trigger()
        assert second.dispatched_to == set()
        h.clock.advance(3.5)
        assert len(h.transport.sent) == 6
        assert first.dispatched_to == {"A", "C"}

    def test_old_session_read_cannot_touch_new_session(self):
        source = DeferredPositionSource()
        h = Harness(source=source)
        old = h.engine.trigger()
        h.clock.advance(3.0)
        h.engine.cancel()
        new = h.engine.trigger()
        source.resolve()
        assert old.state == SessionState.CANCELED
        assert new.state == SessionState.COUNTING_DOWN
        assert new.last_fix is None
        assert h.transport.sent == []

    def test_shutdown_ends_live_session(self, h):
        session = h.engine.trigger()
        h.clock.advance(3.5)
        h.engine.shutdown()
        assert session.state == SessionState.ENDED
        assert h.clock.pending == 0

    def test_to_dict_snapshot(self, h):
        session = h.engine.trigger()
        h.clock.advance(3.5)
        d = session.to_dict()
        assert d["state"] == "active"
        assert d["dispatched_to"] == ["A", "C"]
        assert d["last_fix"]["maps_url"] == "https://www.google.com/maps?q=37.422,-122.084"
        assert d["reports"][0]["intent_count"] == 3
