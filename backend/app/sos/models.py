"""
models.py — Shared data structures for the SOS activation engine.

Defines:
    • TrustedContact    — a person who receives the alert
    • GeoFix            — one captured geolocation reading
    • LocationUnavailable — the degraded stand-in when no fix could be read
    • SessionState      — alert lifecycle states
    • DispatchIntent    — one SMS or call to one contact
    • DeliveryAttempt   — transport outcome for one intent
    • DispatchReport    — everything a single dispatch produced
    • Notice            — user-facing side effect of a transition

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    IDLE ──trigger──► COUNTING_DOWN(3) ─tick─► (2) ─tick─► (1) ─tick─► (0)
                           │                                          │
                         cancel                                       ▼
                           │                                    DISPATCHING
                           ▼                                 (location read,
                       CANCELED ◄────────cancel──────────────  then fan-out)
                                                                      │
                                                                      ▼
                        ENDED ◄───────────cancel──────────────────  ACTIVE
                                                           (30 s location refresh)

CANCELED and ENDED are terminal. A new trigger always builds a new session.

═══════════════════════════════════════════════════════════════════════════
CHANNEL FAN-OUT
═══════════════════════════════════════════════════════════════════════════

    Preference    Intents (in order)
    ──────────    ──────────────────
    sms           SMS
    call          CALL
    both          SMS, CALL

Unverified contacts receive nothing.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from backend.app.core.errors import PositionErrorCode


# Policy defaults
DEFAULT_COUNTDOWN_SECONDS = 3
TICK_SECONDS = 1.0

MAPS_URL = "https://www.google.com/maps?q={lat},{lng}"


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class ContactPriority(str, Enum):
    PRIMARY   = "primary"
    SECONDARY = "secondary"


class NotificationPreference(str, Enum):
    """How a contact wants to be reached."""
    SMS  = "sms"
    CALL = "call"
    BOTH = "both"


class IntentKind(str, Enum):
    """Delivery channel of a single dispatch intent."""
    SMS  = "sms"
    CALL = "call"


# Which intents each preference produces, SMS first
INTENTS_BY_PREFERENCE: Dict[NotificationPreference, List[IntentKind]] = {
    NotificationPreference.SMS:  [IntentKind.SMS],
    NotificationPreference.CALL: [IntentKind.CALL],
    NotificationPreference.BOTH: [IntentKind.SMS, IntentKind.CALL],
}


class SessionState(str, Enum):
    IDLE          = "idle"
    COUNTING_DOWN = "counting_down"
    DISPATCHING   = "dispatching"
    ACTIVE        = "active"
    CANCELED      = "canceled"
    ENDED         = "ended"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CANCELED, SessionState.ENDED)

    @property
    def is_live(self) -> bool:
        """True while the trigger control acts as a cancel button."""
        return self in (
            SessionState.COUNTING_DOWN,
            SessionState.DISPATCHING,
            SessionState.ACTIVE,
        )


class DeliveryStatus(str, Enum):
    """Delivery state per intent."""
    PENDING   = "pending"
    SENDING   = "sending"
    DELIVERED = "delivered"
    FAILED    = "failed"
    SKIPPED   = "skipped"


class NoticeKind(str, Enum):
    COUNTDOWN_STARTED    = "countdown_started"
    LOCATION_UNAVAILABLE = "location_unavailable"
    SMS_SENT             = "sms_sent"
    CALL_STARTED         = "call_started"
    DELIVERY_FAILED      = "delivery_failed"
    NO_VERIFIED_CONTACTS = "no_verified_contacts"
    ALERT_ACTIVE         = "alert_active"
    LOCATION_UPDATED     = "location_updated"
    CANCELED             = "canceled"
    ENDED                = "ended"


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TrustedContact:
    """
    A person notified when an SOS fires.

    Attributes
    ----------
    contact_id : str
        Unique, immutable identifier.
    name : str
        Display name.
    phone : str
        Number used for both SMS and calls.
    email : str | None
        Optional email address (informational only).
    priority : ContactPriority
    relationship : str
        Free text, e.g. "Sister".
    notification_preference : NotificationPreference
        sms, call or both.
    verified : bool
        Only verified contacts are ever notified.
    """
    contact_id: str
    name: str
    phone: str
    email: Optional[str] = None
    priority: ContactPriority = ContactPriority.PRIMARY
    relationship: str = ""
    notification_preference: NotificationPreference = NotificationPreference.SMS
    verified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "priority": self.priority.value,
            "relationship": self.relationship,
            "notification_preference": self.notification_preference.value,
            "verified": self.verified,
        }


@dataclass(frozen=True)
class GeoFix:
    """A single geolocation reading; replaced, never merged."""
    latitude: float
    longitude: float
    captured_at: datetime = field(default_factory=_now)

    @property
    def maps_url(self) -> str:
        return MAPS_URL.format(lat=self.latitude, lng=self.longitude)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "captured_at": self.captured_at.isoformat(),
            "maps_url": self.maps_url,
        }


@dataclass(frozen=True)
class LocationUnavailable:
    """No fix could be obtained; dispatch goes ahead without one."""
    reason: PositionErrorCode = PositionErrorCode.POSITION_UNAVAILABLE
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unavailable": True,
            "reason": self.reason.name.lower(),
            "message": self.message,
        }


LocationResult = Union[GeoFix, LocationUnavailable]


@dataclass(frozen=True)
class DispatchIntent:
    """A request to deliver one notification to one contact."""
    kind: IntentKind
    contact: TrustedContact
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "contact_id": self.contact.contact_id,
            "contact_name": self.contact.name,
            "phone": self.contact.phone,
            "text": self.text,
        }


@dataclass
class DeliveryAttempt:
    """Transport outcome for a single intent."""
    intent: DispatchIntent
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempted_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "kind": self.intent.kind.value,
            "contact_id": self.intent.contact.contact_id,
            "status": self.status.value,
            "attempted_at": self.attempted_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "error_message": self.error_message,
        }


@dataclass
class DispatchReport:
    """Intents planned and delivery attempts made by one dispatch call."""
    location_clause: str
    intents: List[DispatchIntent] = field(default_factory=list)
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    no_verified_contacts: bool = False

    @property
    def delivered(self) -> int:
        return sum(1 for a in self.attempts if a.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for a in self.attempts if a.status == DeliveryStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location_clause": self.location_clause,
            "intent_count": len(self.intents),
            "delivered": self.delivered,
            "failed": self.failed,
            "no_verified_contacts": self.no_verified_contacts,
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass(frozen=True)
class Notice:
    """Something the user should be told about."""
    kind: NoticeKind
    message: str
    contact_id: Optional[str] = None
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "contact_id": self.contact_id,
            "created_at": self.created_at.isoformat(),
        }
