"""
runtime.py — Wire an AlertEngine from settings.

The service runs one engine per process on the asyncio loop, with the
in-memory contact list, the configured SOS message, the simulated position
source and the channel transport.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.core.config import Settings, settings as default_settings
from backend.app.sos.collaborators import (
    InMemoryContactSource,
    NoticeSink,
    SimulatedPositionSource,
    StaticMessageTemplate,
)
from backend.app.sos.dispatcher import ChannelTransport, NotificationDispatcher
from backend.app.sos.engine import AlertEngine
from backend.app.sos.location import LocationProvider
from backend.app.sos.models import Notice
from backend.app.sos.scheduler import AsyncioScheduler, Scheduler

logger = logging.getLogger(__name__)


def log_notice(notice: Notice) -> None:
    """Default notice sink: the log stands in for the UI toast."""
    logger.info("[NOTICE] %s", notice.message, extra={"contact_id": notice.contact_id})


def build_engine(
    config: Optional[Settings] = None,
    *,
    scheduler: Optional[Scheduler] = None,
    contacts: Optional[InMemoryContactSource] = None,
    notify: NoticeSink = log_notice,
) -> AlertEngine:
    config = config or default_settings
    scheduler = scheduler or AsyncioScheduler()

    source = SimulatedPositionSource(
        scheduler,
        config.SIMULATED_LATITUDE,
        config.SIMULATED_LONGITUDE,
    )
    location = LocationProvider(
        source,
        scheduler,
        timeout=config.LOCATION_TIMEOUT_SECONDS,
        max_age=config.LOCATION_MAX_AGE_SECONDS,
    )
    transport = ChannelTransport(
        sms_provider=config.SMS_PROVIDER,
        voice_provider=config.VOICE_PROVIDER,
    )

    logger.info(
        "SOS engine: sms=%s voice=%s refresh=%.0fs position=%s",
        config.SMS_PROVIDER, config.VOICE_PROVIDER, config.LOCATION_REFRESH_SECONDS,
        "simulated" if config.has_simulated_position else "none",
    )
    return AlertEngine(
        contacts=contacts if contacts is not None else InMemoryContactSource(),
        templates=StaticMessageTemplate(config.SOS_MESSAGE),
        location=location,
        dispatcher=NotificationDispatcher(transport),
        scheduler=scheduler,
        refresh_interval=config.LOCATION_REFRESH_SECONDS,
        notify=notify,
    )
