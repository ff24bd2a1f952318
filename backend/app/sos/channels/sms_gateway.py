"""
sms_gateway.py — SMS delivery channel.

Delivery mechanism:
    • Provider-agnostic entry point: send(intent, provider=...)
    • "simulation" logs the message and reports it delivered
    • "disabled" reports every send as failed (transport outage drills)

═══════════════════════════════════════════════════════════════════════════
SEGMENTATION
═══════════════════════════════════════════════════════════════════════════

    SOS texts are never truncated: the location clause sits at the end of
    the body and is the part contacts need most. Long texts are sent as
    concatenated SMS; the segment count is reported for observability.

        GSM 7-bit     160 chars single / 153 per concatenated segment
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

SMS_SINGLE_MAX = 160
SMS_SEGMENT_MAX = 153


def count_segments(body: str) -> int:
    """Number of GSM 7-bit segments needed for ``body``."""
    if len(body) <= SMS_SINGLE_MAX:
        return 1
    return 1 + (len(body) - 1) // SMS_SEGMENT_MAX


def send(intent: DispatchIntent, *, provider: str = "simulation") -> DeliveryAttempt:
    """
    Send an SOS text to the intent's contact.

    Parameters
    ----------
    intent : DispatchIntent
        Must be an SMS intent; the contact must have a phone number.
    provider : str
        "simulation" or "disabled".

    Returns
    -------
    DeliveryAttempt
    """
    attempt = DeliveryAttempt(intent=intent, status=DeliveryStatus.SENDING)
    contact = intent.contact

    try:
        if intent.kind != IntentKind.SMS:
            raise TransportError("sms", f"cannot send {intent.kind.value} intent")

        if not contact.phone:
            attempt.status = DeliveryStatus.SKIPPED
            attempt.completed_at = datetime.now(timezone.utc)
            attempt.error_message = "No phone number on file"
            return attempt

        if provider == "simulation":
            logger.info(
                "[SMS] → %s (%s): %d chars → '%s'",
                contact.phone, contact.name, len(intent.text),
                intent.text[:80] + ("..." if len(intent.text) > 80 else ""),
                extra={"contact_id": contact.contact_id, "channel": "sms"},
            )
            attempt.status = DeliveryStatus.DELIVERED
            attempt.provider_response = {
                "mode": "simulated",
                "message_length": len(intent.text),
                "segments": count_segments(intent.text),
                "phone": contact.phone,
            }
        elif provider == "disabled":
            raise TransportError("sms", "provider disabled")
        else:
            raise TransportError("sms", f"unknown provider: {provider}")

        attempt.completed_at = datetime.now(timezone.utc)

    except TransportError as exc:
        logger.error(
            "[SMS] Failed for %s: %s", contact.contact_id, exc.message,
            extra={"contact_id": contact.contact_id, "channel": "sms"},
        )
        attempt.status = DeliveryStatus.FAILED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.error_message = exc.message

    return attempt
