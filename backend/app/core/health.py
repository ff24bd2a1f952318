"""
Health check aggregation.

Checks:
    • sos_engine       current state, timers held by the live session
    • position_source  does the wired source have a position to report?
    • transport        can each wired channel provider deliver?

The overall status is the worst component status. A missing position source
is DEGRADED, not UNHEALTHY: alerts still go out, just with
"Location unavailable". Only a transport that cannot deliver on any channel
makes the service UNHEALTHY (and /health/ready answer 503).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Tuple

from backend.app.core.config import settings
from backend.app.sos.collaborators import SimulatedPositionSource
from backend.app.sos.dispatcher import ChannelTransport
from backend.app.sos.engine import AlertEngine

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("simulation",)

_started = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    components: List[ComponentHealth]
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    uptime_seconds: float = field(default_factory=lambda: time.monotonic() - _started)

    @property
    def status(self) -> HealthStatus:
        return max(
            (c.status for c in self.components),
            key=lambda s: s.severity,
            default=HealthStatus.HEALTHY,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp": self.checked_at.isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# ── Component checks ──

def check_engine(engine: AlertEngine) -> ComponentHealth:
    session = engine.session
    return ComponentHealth(
        "sos_engine",
        message=f"state={engine.state.value}",
        details={
            "generation": engine.generation,
            "countdown_pending": bool(session and session.countdown_pending),
            "refresh_pending": bool(session and session.refresh_pending),
            "location_watches": engine.location.active_watches,
            "sharing": engine.sharing.enabled,
        },
    )


def check_position_source(engine: AlertEngine) -> ComponentHealth:
    source = engine.location.source
    if not isinstance(source, SimulatedPositionSource):
        return ComponentHealth("position_source", message=type(source).__name__)
    if source.latitude is None or source.longitude is None:
        return ComponentHealth(
            "position_source",
            HealthStatus.DEGRADED,
            "No position configured; alerts will say 'Location unavailable'",
        )
    return ComponentHealth(
        "position_source",
        message="Simulated position configured",
        details={"latitude": source.latitude, "longitude": source.longitude},
    )


def check_transport(engine: AlertEngine) -> ComponentHealth:
    transport = engine.dispatcher.transport
    if not isinstance(transport, ChannelTransport):
        return ComponentHealth("transport", message=type(transport).__name__)
    providers = {kind.value: name for kind, name in transport.providers.items()}
    down = sorted(kind for kind, name in providers.items() if name not in SUPPORTED_PROVIDERS)
    if len(down) == len(providers):
        return ComponentHealth("transport", HealthStatus.UNHEALTHY, "No working transport", providers)
    if down:
        return ComponentHealth(
            "transport", HealthStatus.DEGRADED, f"Unavailable channels: {', '.join(down)}", providers,
        )
    return ComponentHealth("transport", message="All channels available", details=providers)


def run_health_check(engine: AlertEngine) -> HealthReport:
    """Run every check against the wired engine; a check that raises is reported UNHEALTHY."""
    checks: List[Tuple[str, Callable[[AlertEngine], ComponentHealth]]] = [
        ("sos_engine", check_engine),
        ("position_source", check_position_source),
        ("transport", check_transport),
    ]
    components = []
    for name, check in checks:
        try:
            components.append(check(engine))
        except Exception as exc:
            logger.exception("Health check %s failed", name)
            components.append(ComponentHealth(name, HealthStatus.UNHEALTHY, str(exc)))

    report = HealthReport(components)
    if report.status is not HealthStatus.HEALTHY:
        logger.warning("Health check %s", report.status.value)
    return report
