import logging
import time
from contextlib import asynccontextmanager

try:
    import sentry_sdk
except ModuleNotFoundError:  # Sentry optional in local/test envs
    sentry_sdk = None
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

try:
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
except ModuleNotFoundError:  # Sentry optional during local dev/tests
    FastApiIntegration = None
    LoggingIntegration = None

from app.api.routes import health, matching, mentorship, startups
from app.config import settings
from app.observability.metrics import metrics
from app.services.workflows.service import get_workflow_service, shutdown_workflow_service

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _init_sentry() -> None:
    if not (sentry_sdk and FastApiIntegration and LoggingIntegration and settings.sentry_dsn):
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        integrations=[
            FastApiIntegration(auto_enabling_instrumentations=False),
            LoggingIntegration(level=logging.INFO),
        ],
        traces_sample_rate=0.1,
        environment=settings.environment,
    )
    logger.info("Sentry initialized")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the entity store up front so a bad DATABASE_URL fails at boot."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    _init_sentry()

    service = get_workflow_service()
    if not service.store.ping():
        logger.warning("app.store_unreachable_at_startup")
    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    shutdown_workflow_service()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Transactional workflows and mentor matching for the incubator platform",
    lifespan=lifespan,
    debug=settings.debug,
)

# Add CORS middleware
if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Add security middleware
app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["*"] if settings.debug else ["localhost", "127.0.0.1", "testserver"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every request with its status and latency."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    route = request.scope.get("route")
    path_template = getattr(route, "path", request.url.path)
    logger.info(
        "http.request",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(elapsed_ms, 2),
        },
    )
    metrics.timing(
        "http.request_ms",
        elapsed_ms,
        tags={"method": request.method, "route": path_template, "status": response.status_code},
    )
    return response


# Include routers
app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(startups.router, prefix="/api", tags=["startups"])
app.include_router(mentorship.router, prefix="/api", tags=["mentorship"])
app.include_router(matching.router, prefix="/api", tags=["matching"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.environment,
    }
