import asyncio
import sys
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from farmslot.app.core.limiter import limiter
from farmslot.app.api import bookings, delivery_slots, orders
from farmslot.app.api.deps import get_session
from farmslot.app.services.cache import CacheService
from farmslot.app.core.database import transaction
from farmslot.app.core.exceptions import ServiceError
from farmslot.app.core.logging import setup_logging, get_logger, bind_request_context, clear_request_context
from farmslot.app.core.settings import get_settings
from farmslot.app.core.metrics import PrometheusMiddleware, get_metrics_response

# Load and validate settings
try:
    settings = get_settings()
except ValueError as e:
    print(f"Configuration error: {e}", file=sys.stderr)
    sys.exit(1)

# JSON logs in production, console in development
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.is_production
)
logger = get_logger(__name__)

logger.info(
    "Application configuration loaded",
    environment=settings.ENVIRONMENT,
    database="sqlite" if settings.is_sqlite else settings.DB_HOST,
    redis_host=settings.REDIS_HOST,
    booking_hold_minutes=settings.BOOKING_HOLD_MINUTES,
)

MAINTENANCE_INTERVAL_SECONDS = 24 * 60 * 60

HTTP_ERROR_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


async def _get_cache_or_none():
    try:
        return CacheService(await CacheService.get_redis())
    except Exception as e:
        logger.warning("Redis unavailable for scheduler", error=str(e))
        return None


async def _reaper_loop():
    """Background task: release lapsed TEMPORARY bookings every SWEEP_INTERVAL_SECONDS."""
    from farmslot.app.services.reaper import run_scheduled_sweep

    interval = settings.SWEEP_INTERVAL_SECONDS
    cache = await _get_cache_or_none()
    while True:
        try:
            await run_scheduled_sweep(cache, lease_seconds=interval)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Reaper loop: sweep failed", error=str(e))
        await asyncio.sleep(interval)


async def _daily_maintenance():
    """Background task: once a day, clean up past slots and reconcile slot counters."""
    from farmslot.app.services.delivery_slots import DeliverySlotService
    from farmslot.app.services.inventory import reconcile_slot_counters

    cache = await _get_cache_or_none()
    holder = f"maintenance:{uuid.uuid4()}"
    while True:
        try:
            leased = True
            if cache is not None:
                try:
                    leased = await cache.try_acquire_lease(
                        CacheService.KEY_MAINTENANCE_LEASE, holder, MAINTENANCE_INTERVAL_SECONDS - 60
                    )
                except Exception as e:
                    logger.warning("Maintenance lease unavailable, running without it", error=str(e))
            if leased:
                # 1. Remove old slots
                try:
                    async with transaction() as session:
                        result = await DeliverySlotService(session).cleanup_past_slots(
                            settings.SLOT_RETENTION_DAYS
                        )
                    if result["deleted"]:
                        logger.info("Daily maintenance: removed past slots", deleted=result["deleted"])
                except Exception as e:
                    logger.error("Daily maintenance: slot cleanup failed", error=str(e))

                # 2. Reconcile slot reserved counters (fix counter drift)
                try:
                    async with transaction() as session:
                        fixed = await reconcile_slot_counters(session)
                    if fixed:
                        logger.info("Daily maintenance: reconciled slot counters", fixed=len(fixed))
                except Exception as e:
                    logger.error("Daily maintenance: reconcile failed", error=str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Daily maintenance: unexpected error", error=str(e))
        await asyncio.sleep(MAINTENANCE_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.
    - Startup: start the expiry reaper and the daily maintenance job
    - Shutdown: stop them, close Redis
    """
    logger.info("Application starting up", version="1.0.0")
    reaper_task = asyncio.create_task(_reaper_loop())
    maintenance_task = asyncio.create_task(_daily_maintenance())

    yield

    reaper_task.cancel()
    maintenance_task.cancel()
    logger.info("Application shutting down")
    await CacheService.close()


app = FastAPI(title="Farmslot Reservation Engine", lifespan=lifespan)

# Shared limiter (routers use the same instance for @limiter.limit)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # Malformed input is a 400 like any other validation failure
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Invalid request",
            "code": "VALIDATION_ERROR",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", method=request.method, path=request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "code": "INTERNAL_ERROR"})


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    clear_request_context()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    bind_request_context(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# Use settings for CORS configuration
ALLOWED_ORIGINS = settings.allowed_origins_list
if not ALLOWED_ORIGINS:
    if settings.is_production:
        logger.error("ALLOWED_ORIGINS must be set in production environment")
        raise ValueError("ALLOWED_ORIGINS environment variable is required in production")
    # Development fallback
    ALLOWED_ORIGINS = ["*"]
    logger.warning("CORS: Allowing all origins (development mode). Set ALLOWED_ORIGINS in production!")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Prometheus middleware AFTER CORS (runs earlier on response)
app.add_middleware(PrometheusMiddleware)

app.include_router(bookings.router, tags=["bookings"])
app.include_router(delivery_slots.router, prefix="/delivery-slots", tags=["delivery-slots"])
app.include_router(orders.router, prefix="/orders", tags=["orders"])


@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)):
    """
    Health check endpoint for monitoring and orchestration.
    Checks database and Redis connectivity. Redis only coordinates the
    background jobs, so losing it degrades rather than fails the service.
    """
    health_status = {
        "status": "healthy",
        "version": "1.0.0",
        "checks": {
            "database": "ok",
            "redis": "ok"
        }
    }

    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = "error"

    try:
        cache = CacheService(await CacheService.get_redis())
        await cache.ping()
    except Exception as e:
        logger.warning("Redis health check failed", error=str(e))
        if health_status["status"] == "healthy":
            health_status["status"] = "degraded"
        health_status["checks"]["redis"] = "error"

    return health_status


@app.get("/metrics")
async def metrics_endpoint(openmetrics: bool = False):
    """
    Prometheus metrics endpoint.

    Args:
        openmetrics: If True, return OpenMetrics format
    """
    return get_metrics_response(openmetrics=openmetrics)
