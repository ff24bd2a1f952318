"""
Pydantic schemas for the SOS API.

Separated from the route handler so they are reusable across
the codebase (background workers, tests).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.sos.models import (
    ContactPriority,
    NotificationPreference,
    TrustedContact,
)


class ContactInput(BaseModel):
    """A trusted contact as supplied by contact management."""
    contact_id: str = Field(..., min_length=1, examples=["1"])
    name: str = Field(..., min_length=1, examples=["Emma Johnson"])
    phone: str = Field(..., min_length=3, examples=["+1 (555) 123-4567"])
    email: Optional[str] = Field(None, examples=["emma.j@example.com"])
    priority: ContactPriority = Field(ContactPriority.PRIMARY)
    relationship: str = Field("", examples=["Sister"])
    notification_preference: NotificationPreference = Field(
        NotificationPreference.SMS,
        description="sms / call / both",
    )
    verified: bool = Field(False, description="Only verified contacts are alerted")

    @field_validator("phone")
    @classmethod
    def phone_has_digits(cls, v: str) -> str:
        if not any(ch.isdigit() for ch in v):
            raise ValueError("phone must contain digits")
        return v

    def to_contact(self) -> TrustedContact:
        return TrustedContact(
            contact_id=self.contact_id,
            name=self.name,
            phone=self.phone,
            email=self.email,
            priority=self.priority,
            relationship=self.relationship,
            notification_preference=self.notification_preference,
            verified=self.verified,
        )


class ContactsReplaceRequest(BaseModel):
    """Replace the whole contact list."""
    contacts: List[ContactInput] = Field(default_factory=list)


class SessionStatusResponse(BaseModel):
    """Current SOS state plus the latest session, if any."""
    state: str
    generation: int
    session: Optional[Dict[str, Any]] = None


class SharingStatusResponse(BaseModel):
    """Location sharing switch and the latest shared fix."""
    enabled: bool
    location: Optional[Dict[str, Any]] = None
    last_error: Optional[Dict[str, Any]] = None
