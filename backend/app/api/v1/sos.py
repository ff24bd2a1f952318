"""
FastAPI route: SOS activation control.

Provides endpoints to:
    POST   /api/v1/sos/trigger                 — press the SOS control (toggle)
    POST   /api/v1/sos/cancel                  — cancel / end the live session
    GET    /api/v1/sos/status                  — current session snapshot
    GET    /api/v1/sos/sharing                 — location sharing status
    POST   /api/v1/sos/sharing/start           — turn location sharing on
    POST   /api/v1/sos/sharing/stop            — turn location sharing off
    POST   /api/v1/sos/sharing/refresh         — request a fresh shared fix
    GET    /api/v1/sos/contacts                — list trusted contacts
    PUT    /api/v1/sos/contacts                — replace the contact list
    POST   /api/v1/sos/contacts/{id}/verify    — mark a contact verified
    DELETE /api/v1/sos/contacts/{id}           — remove a contact
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter

from backend.app.api.schemas import (
    ContactsReplaceRequest,
    SessionStatusResponse,
    SharingStatusResponse,
)
from backend.app.core.errors import ConflictError
from backend.app.sos.collaborators import InMemoryContactSource
from backend.app.sos.engine import AlertEngine
from backend.app.sos.runtime import build_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sos", tags=["sos"])


# ---------------------------------------------------------------------------
# Engine store (one per process)
# ---------------------------------------------------------------------------

_engine: Optional[AlertEngine] = None
_contacts = InMemoryContactSource()


def get_engine() -> AlertEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(contacts=_contacts)
    return _engine


def set_engine(engine: Optional[AlertEngine]) -> None:
    """Swap the process engine (startup wiring and tests)."""
    global _engine
    if _engine is not None and _engine is not engine:
        _engine.shutdown()
    _engine = engine


def get_contact_store() -> InMemoryContactSource:
    return _contacts


def _status(engine: AlertEngine) -> SessionStatusResponse:
    return SessionStatusResponse(
        state=engine.state.value,
        generation=engine.generation,
        session=engine.session.to_dict() if engine.session else None,
    )


# ---------------------------------------------------------------------------
# Session control
# ---------------------------------------------------------------------------

@router.post(
    "/trigger",
    response_model=SessionStatusResponse,
    summary="Press the SOS control",
    description=(
        "Starts a countdown to alert all verified contacts. Pressing it again "
        "while counting down or active cancels instead."
    ),
)
async def trigger():
    engine = get_engine()
    engine.trigger()
    return _status(engine)


@router.post(
    "/cancel",
    response_model=SessionStatusResponse,
    summary="Cancel the live SOS session",
)
async def cancel():
    engine = get_engine()
    engine.cancel()
    return _status(engine)


@router.get(
    "/status",
    response_model=SessionStatusResponse,
    summary="Current SOS session",
)
async def status():
    return _status(get_engine())


# ---------------------------------------------------------------------------
# Location sharing
# ---------------------------------------------------------------------------

@router.get("/sharing", response_model=SharingStatusResponse, summary="Location sharing status")
async def sharing_status():
    return get_engine().sharing.to_dict()


@router.post(
    "/sharing/start",
    response_model=SharingStatusResponse,
    summary="Turn location sharing on",
    description="Starts continuous tracking. A failed first read turns sharing back off.",
)
async def start_sharing():
    sharing = get_engine().sharing
    sharing.start()
    return sharing.to_dict()


@router.post("/sharing/stop", response_model=SharingStatusResponse, summary="Turn location sharing off")
async def stop_sharing():
    sharing = get_engine().sharing
    sharing.stop()
    return sharing.to_dict()


@router.post("/sharing/refresh", response_model=SharingStatusResponse, summary="Refresh the shared fix")
async def refresh_sharing():
    sharing = get_engine().sharing
    if not sharing.refresh():
        raise ConflictError("Location sharing is off")
    return sharing.to_dict()


# ---------------------------------------------------------------------------
# Contacts (read by the engine at dispatch time)
# ---------------------------------------------------------------------------

@router.get("/contacts", summary="List trusted contacts")
async def list_contacts() -> Dict[str, Any]:
    contacts = get_contact_store().contacts()
    return {
        "contacts": [c.to_dict() for c in contacts],
        "verified_count": sum(1 for c in contacts if c.verified),
    }


@router.put("/contacts", summary="Replace the trusted contact list")
async def replace_contacts(request: ContactsReplaceRequest) -> Dict[str, Any]:
    store = get_contact_store()
    store.replace(c.to_contact() for c in request.contacts)
    logger.info("Contact list replaced (%d contacts)", len(request.contacts))
    return await list_contacts()


@router.post("/contacts/{contact_id}/verify", summary="Verify a contact")
async def verify_contact(contact_id: str) -> Dict[str, Any]:
    return get_contact_store().verify(contact_id).to_dict()


@router.delete("/contacts/{contact_id}", summary="Remove a contact")
async def remove_contact(contact_id: str) -> Dict[str, Any]:
    get_contact_store().remove(contact_id)
    return {"contact_id": contact_id, "status": "removed"}
