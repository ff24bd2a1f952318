"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000
    safety-companion                      # console script, HOST/PORT from settings

The SOS engine is built on startup (its timers need the running loop) and
shut down on exit, so no countdown or refresh timer outlives the loop.
"""

from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api.v1.sos import get_engine, router as sos_router
from backend.app.core.config import settings
from backend.app.core.errors import register_error_handlers
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.core.logging_config import get_logger, setup_logging
from backend.app.core.middleware import RequestLoggingMiddleware

setup_logging()
logger = get_logger(__name__)


# ── Root & health endpoints ──

system_router = APIRouter()


@system_router.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": ["sos-activation", "location-refresh", "location-sharing", "contact-dispatch"],
        "docs": "/docs",
    }


@system_router.get("/health", tags=["health"])
async def health_check():
    """Deep probe: engine, position source and transport."""
    return run_health_check(get_engine()).to_dict()


@system_router.get("/health/live", tags=["health"])
async def liveness():
    return {"status": "alive"}


@system_router.get("/health/ready", tags=["health"])
async def readiness():
    """Ready unless no transport can deliver anything."""
    report = run_health_check(get_engine())
    if report.status is HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()


# ── Application ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()
    logger.info(
        "%s v%s up [%s], SOS engine generation %d",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT, engine.generation,
    )
    yield
    get_engine().shutdown()
    logger.info("%s stopped", settings.APP_NAME)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Personal-safety companion backend. One SOS control starts a "
            "cancelable countdown, alerts verified trusted contacts by SMS "
            "and/or call with the best available location, then keeps "
            "refreshing the location until the alert is ended."
        ),
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    # Added last = outermost: request logging wraps CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.CORS_ALLOW_ALL else settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app)
    app.include_router(system_router)
    app.include_router(sos_router)
    return app


app = create_app()


def run() -> None:
    """Console entry point: serve with uvicorn on HOST:PORT."""
    import uvicorn

    uvicorn.run(
        "backend.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG and not settings.is_production,
        log_config=None,
    )


if __name__ == "__main__":
    run()
