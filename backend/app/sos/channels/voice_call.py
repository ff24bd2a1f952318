"""
voice_call.py — Outbound call channel.

A call carries no text payload of its own; the intent text is kept on the
attempt so a text-to-speech provider can read it out.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from backend.app.core.errors import TransportError
from backend.app.sos.models import (
    DeliveryAttempt,
    DeliveryStatus,
    DispatchIntent,
    IntentKind,
)

logger = logging.getLogger(__name__)


def send(intent: DispatchIntent, *, provider: str = "simulation") -> DeliveryAttempt:
    """Place a call to the intent's contact; returns a DeliveryAttempt."""
    attempt = DeliveryAttempt(intent=intent, status=DeliveryStatus.SENDING)
    contact = intent.contact

    try:
        if intent.kind != IntentKind.CALL:
            raise TransportError("call", f"cannot place {intent.kind.value} intent")

        if not contact.phone:
            attempt.status = DeliveryStatus.SKIPPED
            attempt.completed_at = datetime.now(timezone.utc)
            attempt.error_message = "No phone number on file"
            return attempt

        if provider == "simulation":
            logger.info(
                "[CALL] Dialling %s (%s)", contact.phone, contact.name,
                extra={"contact_id": contact.contact_id, "channel": "call"},
            )
            attempt.status = DeliveryStatus.DELIVERED
            attempt.provider_response = {
                "mode": "simulated",
                "phone": contact.phone,
                "script_length": len(intent.text),
            }
        elif provider == "disabled":
            raise TransportError("call", "provider disabled")
        else:
            raise TransportError("call", f"unknown provider: {provider}")

        attempt.completed_at = datetime.now(timezone.utc)

    except TransportError as exc:
        logger.error(
            "[CALL] Failed for %s: %s", contact.contact_id, exc.message,
            extra={"contact_id": contact.contact_id, "channel": "call"},
        )
        attempt.status = DeliveryStatus.FAILED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = exc.message

    return attempt
