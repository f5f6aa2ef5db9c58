"""
main.py
ASGI entry point for the booking engine: quotes, availability, checkout
(free or M-Pesa STK push), rescheduling, the Daraja callback and the
in-app notification inbox.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

import config.redis_client as redis_state
from config.database import close_db, init_db, ping_db
from config.log_setup import configure_logging, request_id_var
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings
from services.booking.router import router as booking_router
from services.capacity.router import router as capacity_router
from services.notification.router import router as notification_router
from services.payment.mpesa import close_mpesa_client
from services.payment.router import CALLBACK_PATH, router as payment_router
from shared.exceptions import BookingEngineError
from shared.utils.resilience import circuit_breaker_manager

configure_logging("api")
logger = logging.getLogger(__name__)

# Safaricom must always reach the callback; health checks and docs are not user traffic
UNMETERED_PATHS = {CALLBACK_PATH, "/health", "/metrics", "/docs", "/redoc", "/openapi.json"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    try:
        await init_redis()
    except Exception as e:
        # Status cache, rate limiting and token revocation are skipped without Redis
        logger.error(f"Redis unavailable, running without it: {e}")
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} ready (M-Pesa {settings.MPESA_ENV})")

    yield

    await close_mpesa_client()
    await close_redis()
    await close_db()


def _install_middleware(app: FastAPI) -> None:
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    @app.middleware("http")
    async def throttle_anonymous(request: Request, call_next):
        client = redis_state.redis_client
        signed_in = request.headers.get("Authorization", "").startswith("Bearer ")
        if client is None or signed_in or request.url.path in UNMETERED_PATHS:
            return await call_next(request)

        ip = request.client.host if request.client else "unknown"
        try:
            allowed = await RedisCache(client).hit(f"rate:anon:{ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE)
        except Exception as e:
            # Fail open
            logger.warning(f"Rate limiter unavailable: {e}")
            allowed = True
        if not allowed:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests", "code": "rate_limited"},
                headers={"Retry-After": "60"},
            )
        return await call_next(request)

    # Registered last so it wraps everything above and every log line carries the id
    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{(time.perf_counter() - started) * 1000:.1f}ms"
        return response


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(BookingEngineError)
    async def domain_error(request: Request, exc: BookingEngineError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "detail": str(exc) if settings.DEBUG else "Internal server error",
                "code": "internal_error",
            },
        )


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description=(
            "Booking lifecycle and capacity reconciliation for trips, events, hotels, "
            "adventure places and attractions. Checkout accepts a bearer token or a guest contact."
        ),
        lifespan=lifespan,
    )
    _install_middleware(app)
    _install_error_handlers(app)

    @app.get("/health", include_in_schema=False)
    async def health():
        report = {"version": settings.APP_VERSION, "mpesa_env": settings.MPESA_ENV}
        try:
            await ping_db()
            report["database"] = "ok"
        except Exception:
            report["database"] = "error"

        client = redis_state.redis_client
        if client is None:
            report["redis"] = "disabled"
        else:
            try:
                await client.ping()
                report["redis"] = "ok"
            except Exception:
                report["redis"] = "error"

        report["circuit_breakers"] = circuit_breaker_manager.states()
        # Redis is optional, the database is not
        report["status"] = "ok" if report["database"] == "ok" else "degraded"
        return JSONResponse(content=report, status_code=200 if report["status"] == "ok" else 503)

    for router in (booking_router, capacity_router, payment_router, notification_router):
        app.include_router(router)

    Instrumentator(excluded_handlers=["/health", "/metrics"]).instrument(app).expose(
        app, endpoint="/metrics", include_in_schema=False,
    )
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
    )
