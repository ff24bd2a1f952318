"""
dispatcher.py — Contact fan-out and per-intent delivery.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    contacts (input order)
        │
        ▼
    1. drop unverified contacts (and contacts already notified this session)
        │
        ▼
    2. text = "{message} {location clause}"
         clause = "Location: 37.422000, -122.084000"   (6 dp)
               or "Location unavailable"
         computed once, shared by every intent
        │
        ▼
    3. fan-out by preference: sms → SMS, call → CALL, both → SMS, CALL
        │
        ▼
    4. each intent → transport sink → DeliveryAttempt
         a failing intent never stops the next one

Dispatch is synchronous. A contact list with no verified contacts is not a
failure: the report carries ``no_verified_contacts=True`` and zero intents.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import AbstractSet, Callable, Dict, List, Optional, Sequence

from backend.app.sos.channels import sms_gateway, voice_call
from backend.app.sos.collaborators import TransportSink
from backend.app.sos.models import (
    INTENTS_BY_PREFERENCE,
    DeliveryAttempt,
    DeliveryStatus,
    DispatchIntent,
    DispatchReport,
    GeoFix,
    IntentKind,
    LocationResult,
    TrustedContact,
)

logger = logging.getLogger(__name__)

LOCATION_UNAVAILABLE_CLAUSE = "Location unavailable"


def format_location_clause(fix: Optional[LocationResult]) -> str:
    """Render the trailing location sentence of an SOS text."""
    if isinstance(fix, GeoFix):
        return f"Location: {fix.latitude:.6f}, {fix.longitude:.6f}"
    return LOCATION_UNAVAILABLE_CLAUSE


def plan_intents(
    contacts: Sequence[TrustedContact],
    fix: Optional[LocationResult],
    message: str,
    *,
    exclude: AbstractSet[str] = frozenset(),
) -> List[DispatchIntent]:
    """
    Compute the dispatch intents for a contact list. Pure; sends nothing.

    Parameters
    ----------
    contacts : sequence of TrustedContact
        Output order follows this order.
    fix : GeoFix | LocationUnavailable | None
    message : str
        SOS message snapshot.
    exclude : set of contact ids
        Contacts already notified; they get no further intents.

    Returns
    -------
    list of DispatchIntent
        SMS before CALL within one contact.
    """
    text = f"{message} {format_location_clause(fix)}"
    intents: List[DispatchIntent] = []
    for contact in contacts:
        if not contact.verified or contact.contact_id in exclude:
            continue
        for kind in INTENTS_BY_PREFERENCE[contact.notification_preference]:
            intents.append(DispatchIntent(kind=kind, contact=contact, text=text))
    return intents


# ═══════════════════════════════════════════════════════════════════════════
# Transport
# ═══════════════════════════════════════════════════════════════════════════

class ChannelTransport:
    """TransportSink that routes each intent to its channel backend."""

    def __init__(self, sms_provider: str = "simulation", voice_provider: str = "simulation"):
        self.providers: Dict[IntentKind, str] = {
            IntentKind.SMS: sms_provider,
            IntentKind.CALL: voice_provider,
        }
        self._channels: Dict[IntentKind, Callable[..., DeliveryAttempt]] = {
            IntentKind.SMS: sms_gateway.send,
            IntentKind.CALL: voice_call.send,
        }

    def send(self, intent: DispatchIntent) -> DeliveryAttempt:
        channel = self._channels[intent.kind]
        return channel(intent, provider=self.providers[intent.kind])


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class NotificationDispatcher:
    """Plans intents and hands each one to the transport sink."""

    def __init__(self, transport: TransportSink):
        self.transport = transport

    def dispatch(
        self,
        contacts: Sequence[TrustedContact],
        fix: Optional[LocationResult],
        message: str,
        *,
        exclude: AbstractSet[str] = frozenset(),
    ) -> DispatchReport:
        clause = format_location_clause(fix)
        report = DispatchReport(
            location_clause=clause,
            intents=plan_intents(contacts, fix, message, exclude=exclude),
            no_verified_contacts=not any(c.verified for c in contacts),
        )

        if report.no_verified_contacts:
            logger.warning("No verified contacts available; nothing to dispatch")
            return report

        for intent in report.intents:
            report.attempts.append(self._deliver(intent))

        logger.info(
            "Dispatched %d intents: %d delivered, %d failed (%s)",
            len(report.intents), report.delivered, report.failed, clause,
        )
        return report

    def _deliver(self, intent: DispatchIntent) -> DeliveryAttempt:
        try:
            return self.transport.send(intent)
        except Exception as exc:
            # A raising sink fails this intent only
            logger.error(
                "Transport raised for %s %s: %s",
                intent.kind.value, intent.contact.contact_id, exc,
                extra={"contact_id": intent.contact.contact_id, "channel": intent.kind.value},
            )
            return DeliveryAttempt(
                intent=intent,
                status=DeliveryStatus.FAILED,
                completed_at=datetime.now(timezone.utc),
                error_message=str(exc),
            )
