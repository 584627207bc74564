"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Production-ready features:
- Structured JSON logging
- Redis fixed-window rate limiting (fails open)
- Uniform JSON error envelope for domain errors
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from redis.exceptions import RedisError

from config.database import close_db, init_db
from config.redis_client import RateLimiter, close_redis, get_redis, init_redis
from config.settings import settings
from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.notification.email import EmailClient
from services.notification.router import router as notification_router
from shared.utils.exceptions import AppException, RateLimited
from shared.utils.geocoding import GeocodingClient
from tasks.notification_tasks import enqueue_booking_status


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.APP_ENV})")

    await init_db()
    logger.info("Database connected")

    try:
        await init_redis()
        logger.info("Redis connected")
    except (RedisError, OSError) as e:
        # Rate limiting fails open without Redis
        await close_redis()
        logger.warning(f"Redis unavailable, rate limiting disabled: {e}")

    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── Rate Limiting ─────────────────────────────────────────────

AUTH_ACTIONS = ("/login", "/register/start", "/register/complete", "/forgot-password", "/reset-password")
SKIP_RATE_LIMIT = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}


def rate_limit_bucket(request: Request):
    """Returns (bucket, limit, window_seconds) for the request, or None to skip."""
    path = request.url.path
    if path in SKIP_RATE_LIMIT:
        return None
    if path == "/admin/auth/register/start":
        return ("admin-register", settings.ADMIN_REGISTRATION_RATE_LIMIT,
                settings.ADMIN_REGISTRATION_RATE_LIMIT_WINDOW_SECONDS)
    if path.startswith(("/auth/", "/admin/auth/")) and path.endswith(AUTH_ACTIONS):
        return ("auth", settings.AUTH_RATE_LIMIT, settings.AUTH_RATE_LIMIT_WINDOW_SECONDS)
    if request.headers.get("Authorization", "").startswith("Bearer "):
        # Authenticated traffic is limited at the load balancer
        return None
    return ("general", settings.RATE_LIMIT_UNAUTH_PER_MINUTE, 60)


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Borewell Services Platform API

- **Auth**: email + password with OTP email verification; JWT access/refresh pair
- **Vendors**: registration, admin approval queue
- **Bookings**: guarded lifecycle from request to final settlement
- **Admin**: role-scoped admin management with last-super-admin protection
- **Notifications**: FCM device registry, email status updates

### Authentication
Protected endpoints accept `Authorization: Bearer <access_token>` or the `accessToken` cookie.
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Collaborators ─────────────────────────────────────────────
    app.state.email_client = EmailClient(
        settings.RESEND_API_KEY, settings.EMAIL_FROM, settings.EMAIL_FROM_NAME
    )
    app.state.geocoding_client = GeocodingClient(
        settings.GOOGLE_MAPS_API_KEY, timeout=settings.GEOCODING_TIMEOUT_SECONDS
    )
    app.state.booking_notifier = enqueue_booking_status

    # ── Middleware (last added runs outermost) ─────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        bucket = rate_limit_bucket(request)
        client = get_redis()
        if bucket is None or client is None:
            return await call_next(request)

        name, limit, window = bucket
        client_ip = request.client.host if request.client else "unknown"
        try:
            allowed = await RateLimiter(client).hit(f"rate:{name}:{client_ip}", limit, window)
        except RedisError as e:
            logger.error(f"Rate limit check failed: {e}")
            return await call_next(request)

        if not allowed:
            logger.warning(f"Rate limit '{name}' exceeded for IP {client_ip}")
            exc = RateLimited("Too many requests. Please try again later.")
            return JSONResponse(
                status_code=exc.status_code,
                content={**exc.to_dict(), "request_id": getattr(request.state, "request_id", None)},
                headers={"Retry-After": str(window)},
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
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        request_id = getattr(request.state, "request_id", None)
        if exc.status_code >= 500:
            logger.error(f"[{request_id}] {exc!r}")
        else:
            logger.info(f"[{request_id}] {request.method} {request.url.path} -> {exc!r}")
        return JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_dict(), "request_id": request_id},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "detail": str(exc) if settings.DEBUG else "An internal server error occurred",
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from sqlalchemy import text
        from config.database import AsyncSessionLocal

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            checks["database"] = "error"
            checks["status"] = "degraded"

        client = get_redis()
        if client is None:
            checks["redis"] = "disabled"
        else:
            try:
                await client.ping()
                checks["redis"] = "ok"
            except RedisError:
                checks["redis"] = "error"
                checks["status"] = "degraded"

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

    app.include_router(auth_router)
    app.include_router(booking_router)
    app.include_router(notification_router)
    app.include_router(admin_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


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
