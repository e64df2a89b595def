"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Production features:
- Multiple instances behind NGINX (realtime events relayed over Redis pub/sub)
- Circuit breakers for outbound notification channels
- Redis rate limiting
- Request IDs in every response and log line
- Prometheus metrics
"""

import asyncio
import contextlib
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pybreaker import CircuitBreakerError
from redis.exceptions import RedisError
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

import config.redis_client as redis_module
from config.database import AsyncSessionLocal, close_db, init_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings

# Service routers
from services.admin.router import router as admin_router
from services.appointment.router import router as appointment_router
from services.auth.router import router as auth_router
from services.checkin.router import router as checkin_router
from services.consultation.router import router as consultation_router
from services.dashboard.router import router as dashboard_router
from services.notification.router import router as notification_router
from services.queue.router import router as queue_router
from services.realtime.manager import run_listener
from services.realtime.router import router as realtime_router
from services.reception.router import router as reception_router
from services.remedy.router import router as remedy_router
from services.settings.router import router as settings_router
from services.settings.service import seed_default_settings
from services.user.router import router as user_router
from shared.utils.resilience import circuit_breaker_manager


# ── Logging ──────────────────────────────────────────────────

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


class RequestIdFilter(logging.Filter):
    """Stamp every record with the id of the request being served, if any."""

    def filter(self, record: LogRecord) -> bool:
        # Handlers that run after the middleware pass request_id in `extra`
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": settings.INSTANCE_NAME,
            "request_id": getattr(record, "request_id", None),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(RequestIdFilter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} API...")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    await seed_initial_data()

    listener = asyncio.create_task(run_listener())
    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    listener.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await listener
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Ashram Appointment & Queue Platform API

- **Auth**: email/phone + password, Google OAuth2, JWT (15min) + rotating refresh tokens
- **Appointments**: booking, availability, reschedule, cancel, family bookings
- **Check-in**: appointment QR, ashram location QR (geofenced), manual reception check-in
- **Queue**: per-guruji priority queue with live positions and wait estimates
- **Consultations & Remedies**: sessions, prescriptions, printable remedy PDFs
- **Notifications**: in-app + FCM push + SMS + email, realtime over WebSocket

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` header.

### Roles
- `USER`: devotee; books appointments, checks in, follows the queue
- `COORDINATOR`: reception desk; walk-ins, phone bookings, manual check-in
- `GURUJI`: runs consultations and prescribes remedies
- `ADMIN`: users, settings, audit trail, reports
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware ─────────────────────────────────────────────────
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    # Session (needed for OAuth state parameter)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SECRET_KEY,
        session_cookie="ashram_session",
        same_site="lax",
        https_only=settings.is_production,
    )

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed-window limiter per client IP: a tighter budget for anonymous callers.
        Fails open when Redis is unavailable.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        client = redis_module.redis_client
        if request.url.path in skip_paths or client is None:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        if request.headers.get("Authorization", "").startswith("Bearer "):
            key, limit = f"rate:auth:{client_ip}", settings.RATE_LIMIT_PER_MINUTE
        else:
            key, limit = f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE

        try:
            allowed = await RedisCache(client).check_rate_limit(key, limit)
        except RedisError as e:
            logger.error(f"Rate limit check failed: {e}")
            allowed = True

        if not allowed:
            logger.warning(f"Rate limit exceeded for IP {client_ip}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Please slow down."},
                headers={"Retry-After": "60"},
            )
        return await call_next(request)

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(CircuitBreakerError)
    async def circuit_open_handler(request: Request, exc: CircuitBreakerError):
        request_id = getattr(request.state, "request_id", None)
        logger.error(
            f"[{request_id}] Service degraded - circuit breaker open: {exc}",
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=503,
            content={
                "detail": "Service temporarily unavailable. Please try again later.",
                "request_id": request_id,
                "status": "degraded",
            },
            headers={"X-Request-ID": request_id or ""},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(
            f"[{request_id}] Unhandled exception: {exc}",
            exc_info=exc,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=500,
            content={
                "detail": str(exc) if settings.DEBUG else "An internal server error occurred",
                "request_id": request_id,
            },
            headers={"X-Request-ID": request_id or ""},
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        checks = {
            "status": "ok",
            "version": settings.APP_VERSION,
            "instance": settings.INSTANCE_NAME,
        }

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Health check: database unavailable: {e}")
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_module.redis_client is None:
                raise RedisError("not initialized")
            await redis_module.redis_client.ping()
            checks["redis"] = "ok"
        except (RedisError, OSError) as e:
            logger.error(f"Health check: redis unavailable: {e}")
            checks["redis"] = "error"
            checks["status"] = "degraded"

        checks["circuit_breakers"] = circuit_breaker_manager.status()
        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    app.include_router(auth_router)
    app.include_router(user_router)
    app.include_router(appointment_router)
    app.include_router(checkin_router)
    app.include_router(queue_router)
    app.include_router(consultation_router)
    app.include_router(remedy_router)
    app.include_router(notification_router)
    app.include_router(realtime_router)
    app.include_router(dashboard_router)
    app.include_router(reception_router)
    app.include_router(settings_router)
    app.include_router(admin_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────
# ── Startup Data Seeder ───────────────────────────────────────
SEED_REMEDY_TEMPLATES = [
    {
        "name": "Morning Pranayama",
        "type": "SPIRITUAL",
        "category": "Breathing",
        "instructions": "Practise anulom-vilom for 10 minutes at sunrise on an empty stomach.",
        "duration": "21 days",
    },
    {
        "name": "Triphala Churna",
        "type": "AYURVEDIC",
        "category": "Digestion",
        "instructions": "Take with warm water before sleeping.",
        "dosage": "1 teaspoon",
        "duration": "30 days",
    },
    {
        "name": "Arnica 30C",
        "type": "HOMEOPATHIC",
        "category": "Pain",
        "instructions": "Dissolve under the tongue. Avoid coffee and mint within 30 minutes.",
        "dosage": "4 pills, 3 times a day",
        "duration": "7 days",
    },
    {
        "name": "Sattvic Diet",
        "type": "DIETARY",
        "category": "Diet",
        "instructions": "Freshly cooked vegetarian meals. No onion, garlic, or fried food.",
        "duration": "40 days",
    },
    {
        "name": "Early Sleep Routine",
        "type": "LIFESTYLE",
        "category": "Sleep",
        "instructions": "Screens off by 9 PM, asleep by 10 PM, up before 6 AM.",
    },
]


async def seed_initial_data():
    """Default settings in every environment; starter remedy templates in development only."""
    from shared.models.models import RemedyTemplate, RemedyType

    async with AsyncSessionLocal() as db:
        added = await seed_default_settings(db)

        if settings.APP_ENV == "development":
            count = await db.scalar(select(func.count(RemedyTemplate.id)))
            if not count:
                for template in SEED_REMEDY_TEMPLATES:
                    db.add(RemedyTemplate(**{**template, "type": RemedyType(template["type"])}))
                logger.info(f"Seeded {len(SEED_REMEDY_TEMPLATES)} remedy templates")

        await db.commit()
        if added:
            logger.info(f"Seeded {added} default settings")


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
