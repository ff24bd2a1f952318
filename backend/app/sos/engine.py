"""
engine.py — The SOS control: one button, two meanings.

    no session / last one finished   trigger() → fresh AlertSession
    session counting down or active  trigger() → cancel that session

The engine holds at most one session at a time and a monotonically
increasing generation counter. A session only acts on callbacks issued
under the current generation, so nothing from an earlier session can touch
a later one. Dispatch history is never carried from one session to the next.

Location sharing is owned by the engine but runs independently of sessions:
it is switched on and off by the user, and only shutdown() touches both.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.sos.collaborators import ContactSource, MessageTemplateSource, NoticeSink
from backend.app.sos.dispatcher import NotificationDispatcher
from backend.app.sos.location import DEFAULT_REFRESH_SECONDS, LocationProvider
from backend.app.sos.models import DEFAULT_COUNTDOWN_SECONDS, Notice, SessionState
from backend.app.sos.scheduler import Scheduler
from backend.app.sos.session import AlertSession
from backend.app.sos.sharing import LocationSharing

logger = logging.getLogger(__name__)


class AlertEngine:
    def __init__(
        self,
        *,
        contacts: ContactSource,
        templates: MessageTemplateSource,
        location: LocationProvider,
        dispatcher: NotificationDispatcher,
        scheduler: Scheduler,
        countdown_total: int = DEFAULT_COUNTDOWN_SECONDS,
        refresh_interval: float = DEFAULT_REFRESH_SECONDS,
        notify: Optional[NoticeSink] = None,
    ):
        self.contacts = contacts
        self.templates = templates
        self.location = location
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.countdown_total = countdown_total
        self.refresh_interval = refresh_interval
        self.notify = notify
        self.generation = 0
        self.session: Optional[AlertSession] = None
        self.sharing = LocationSharing(location, notify=self._forward_notice)

    @property
    def state(self) -> SessionState:
        return self.session.state if self.session else SessionState.IDLE

    def trigger(self) -> AlertSession:
        """Press the SOS control."""
        live = self._live_session()
        if live is not None:
            logger.info(
                "Trigger while %s: treating as cancel", live.state.value,
                extra={"session_id": live.session_id},
            )
            live.cancel()
            return live

        self.generation += 1
        session = AlertSession(
            self.generation,
            message_template=self.templates.message_template(),
            contacts=self.contacts,
            location=self.location,
            dispatcher=self.dispatcher,
            scheduler=self.scheduler,
            countdown_total=self.countdown_total,
            refresh_interval=self.refresh_interval,
            notify=self.notify,
            is_current=self._is_current,
        )
        self.session = session
        session.trigger()
        return session

    def cancel(self) -> Optional[AlertSession]:
        """Cancel or end the live session; no-op when nothing is live."""
        live = self._live_session()
        if live is not None:
            live.cancel()
        return self.session

    def shutdown(self) -> None:
        """Tear down any live session and stop sharing (service shutdown)."""
        if self._live_session() is not None:
            logger.warning("Shutting down with a live SOS session; ending it")
            self.cancel()
        self.sharing.stop()

    def _forward_notice(self, notice: Notice) -> None:
        if self.notify is not None:
            self.notify(notice)

    def _live_session(self) -> Optional[AlertSession]:
        if self.session is not None and self.session.state.is_live:
            return self.session
        return None

    def _is_current(self, session_id: int) -> bool:
        return session_id == self.generation
