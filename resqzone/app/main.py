"""
ResQZone server.

    uvicorn resqzone.app.main:app --reload --port 8000

``create_app`` wires settings, logging, middleware, error handlers and the
v1 routers; ``app`` is the instance uvicorn serves.
"""

from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from resqzone.app.api.v1.alerts import router as alerts_router
from resqzone.app.api.v1.groups import router as groups_router
from resqzone.app.api.v1.stream import router as stream_router
from resqzone.app.core.config import settings
from resqzone.app.core.database import close_db, init_db
from resqzone.app.core.errors import register_error_handlers
from resqzone.app.core.health import HealthStatus, run_health_check
from resqzone.app.core.logging_config import get_logger, setup_logging
from resqzone.app.core.middleware import RequestLoggingMiddleware
from resqzone.app.realtime.sink import close_redis

logger = get_logger(__name__)

FEATURES = [
    "local-groups",
    "membership",
    "emergency-fanout",
    "directed-alerts",
    "realtime-stream",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s %s starting (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)
    # Production schemas are migrated out of band
    if settings.is_development:
        await init_db()
    try:
        yield
    finally:
        await close_redis()
        await close_db()
        logger.info("%s stopped", settings.APP_NAME)


service_router = APIRouter()


@service_router.get("/", tags=["service"])
async def index():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": FEATURES,
        "docs": "/docs",
    }


@service_router.get("/health", tags=["service"])
async def health():
    """Every dependency probe, always 200."""
    return (await run_health_check()).to_dict()


@service_router.get("/health/live", tags=["service"])
async def live():
    return {"status": "alive"}


@service_router.get("/health/ready", tags=["service"])
async def ready():
    """503 while the database is unreachable."""
    report = await run_health_check()
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()


def create_app() -> FastAPI:
    setup_logging()

    application = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description=(
            "Proximity grouping and emergency alert fanout. Residents are "
            "enrolled into the community group covering their position; "
            "alerts reach everyone within a radius with per-user delivery "
            "and read tracking, pushed live over SSE."
        ),
        lifespan=lifespan,
    )

    # Added last runs first: logging wraps CORS
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.CORS_ALLOW_ALL else settings.CORS_ORIGINS,
        allow_credentials=not settings.CORS_ALLOW_ALL,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    application.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(application)

    application.include_router(service_router)
    for router in (groups_router, alerts_router, stream_router):
        application.include_router(router)
    return application


app = create_app()
