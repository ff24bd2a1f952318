"""
collaborators.py — Narrow contracts between the engine and the outside world.

The engine reads contacts and the SOS message, hands intents to a transport
sink, reads positions from a position source and reports notices. Each
contract is a Protocol; the in-memory / simulated stand-ins below are what
the service runs with until real providers are wired in.

    Contract                 Stand-in
    ─────────────────────    ─────────────────────────
    ContactSource            InMemoryContactSource
    MessageTemplateSource    StaticMessageTemplate
    PositionSource           SimulatedPositionSource
    TransportSink            dispatcher.ChannelTransport
    NoticeSink               any callable(Notice)
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from backend.app.core.errors import (
    NotFoundError,
    PositionError,
    PositionErrorCode,
    ValidationError,
)
from backend.app.sos.models import (
    DeliveryAttempt,
    DispatchIntent,
    GeoFix,
    Notice,
    TrustedContact,
)
from backend.app.sos.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


NoticeSink = Callable[[Notice], None]
PositionCallback = Callable[[GeoFix], None]
PositionErrorCallback = Callable[[PositionError], None]


@dataclass(frozen=True)
class PositionOptions:
    """Options passed through to the position source."""
    enable_high_accuracy: bool = False
    timeout: float = 5.0
    maximum_age: float = 10.0


# ═══════════════════════════════════════════════════════════════════════════
# Protocols
# ═══════════════════════════════════════════════════════════════════════════

class ContactSource(Protocol):
    def contacts(self) -> Sequence[TrustedContact]: ...


class MessageTemplateSource(Protocol):
    def message_template(self) -> str: ...


class TransportSink(Protocol):
    def send(self, intent: DispatchIntent) -> DeliveryAttempt: ...


class PositionSource(Protocol):
    """Single-shot plus continuous geolocation, callback style."""

    def get_current_position(
        self,
        on_success: PositionCallback,
        on_error: PositionErrorCallback,
        options: PositionOptions,
    ) -> None: ...

    def watch_position(
        self,
        on_update: PositionCallback,
        on_error: PositionErrorCallback,
        options: PositionOptions,
    ) -> int: ...

    def clear_watch(self, watch_id: int) -> None: ...


# ═══════════════════════════════════════════════════════════════════════════
# Contacts
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryContactSource:
    """
    Contact list held in memory.

    The engine only calls ``contacts()``. ``replace``, ``verify`` and
    ``remove`` belong to contact management; verification is one-way.
    """

    def __init__(self, contacts: Iterable[TrustedContact] = ()):
        self._contacts: Dict[str, TrustedContact] = {}
        self.replace(contacts)

    def contacts(self) -> Tuple[TrustedContact, ...]:
        return tuple(self._contacts.values())

    def get(self, contact_id: str) -> TrustedContact:
        try:
            return self._contacts[contact_id]
        except KeyError:
            raise NotFoundError("Contact", contact_id=contact_id) from None

    def replace(self, contacts: Iterable[TrustedContact]) -> None:
        staged: Dict[str, TrustedContact] = {}
        for contact in contacts:
            if contact.contact_id in staged:
                raise ValidationError(
                    f"Duplicate contact id: {contact.contact_id}",
                    field="contact_id",
                )
            staged[contact.contact_id] = contact
        self._contacts = staged

    def verify(self, contact_id: str) -> TrustedContact:
        contact = self.get(contact_id)
        if not contact.verified:
            contact = dataclasses.replace(contact, verified=True)
            self._contacts[contact_id] = contact
            logger.info("Contact %s verified", contact_id, extra={"contact_id": contact_id})
        return contact

    def remove(self, contact_id: str) -> None:
        self.get(contact_id)
        del self._contacts[contact_id]


class StaticMessageTemplate:
    """SOS message text; the engine snapshots it once per session."""

    def __init__(self, text: str):
        self.text = text

    def message_template(self) -> str:
        return self.text


# ═══════════════════════════════════════════════════════════════════════════
# Simulated position source
# ═══════════════════════════════════════════════════════════════════════════

class SimulatedPositionSource:
    """
    Position source driven by a Scheduler.

    Reports a fixed coordinate after ``latency`` seconds. With no
    coordinate it reports POSITION_UNAVAILABLE; ``fail_with()`` forces a
    specific error; ``silent=True`` never calls back at all (models a
    provider that hangs).
    """

    def __init__(
        self,
        scheduler: Scheduler,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        *,
        latency: float = 0.1,
        watch_interval: float = 1.0,
        silent: bool = False,
    ):
        self.scheduler = scheduler
        self.latitude = latitude
        self.longitude = longitude
        self.latency = latency
        self.watch_interval = watch_interval
        self.silent = silent
        self.error: Optional[PositionErrorCode] = None
        self.reads = 0
        self._watch_ids = itertools.count(1)
        self._watches: Dict[int, TimerHandle] = {}

    def move_to(self, latitude: float, longitude: float) -> None:
        self.latitude, self.longitude = latitude, longitude
        self.error = None

    def fail_with(self, code: Optional[PositionErrorCode]) -> None:
        self.error = code

    def get_current_position(
        self,
        on_success: PositionCallback,
        on_error: PositionErrorCallback,
        options: PositionOptions,
    ) -> None:
        self.reads += 1
        if self.silent:
            return
        self.scheduler.call_later(
            self.latency, lambda: self._report(on_success, on_error),
        )

    def watch_position(
        self,
        on_update: PositionCallback,
        on_error: PositionErrorCallback,
        options: PositionOptions,
    ) -> int:
        watch_id = next(self._watch_ids)
        self.get_current_position(on_update, on_error, options)
        self._watches[watch_id] = self.scheduler.call_every(
            self.watch_interval,
            lambda: self.get_current_position(on_update, on_error, options),
        )
        return watch_id

    def clear_watch(self, watch_id: int) -> None:
        handle = self._watches.pop(watch_id, None)
        self.scheduler.cancel(handle)

    @property
    def active_watches(self) -> List[int]:
        return list(self._watches)

    def _report(self, on_success: PositionCallback, on_error: PositionErrorCallback) -> None:
        if self.error is not None:
            on_error(PositionError(self.error))
        elif self.latitude is None or self.longitude is None:
            on_error(PositionError(PositionErrorCode.POSITION_UNAVAILABLE, "no provider"))
        else:
            on_success(GeoFix(self.latitude, self.longitude))
