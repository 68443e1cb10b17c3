from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
from slowapi.errors import RateLimitExceeded
import asyncio
import logging
import uuid

from . import __version__
from .config import settings
from .database import create_tables, SessionLocal
from .utils.errors import AppError, app_error_handler, request_validation_handler, unhandled_error_handler
from .utils.logging_config import setup_logging, set_request_context, clear_request_context
from .utils.rate_limiter import limiter
from .routers import orders, payments, bookings, payouts, health

logger = logging.getLogger(__name__)


def _run_worker_cycle_once() -> None:
    from .services.background_jobs import run_worker_cycle, cycle_had_activity

    db = SessionLocal()
    try:
        results = run_worker_cycle(db, batch_size=settings.worker_batch_size)
        if cycle_had_activity(results):
            logger.info(f"Worker cycle: {results}")
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging(level=settings.log_level, json_format=settings.log_json)
    logger.info(f"Starting gully-backend {__version__} ({settings.environment})")
    logger.info(f"CORS origins: {settings.cors_origins}")

    create_tables()
    if not settings.has_razorpay_credentials:
        logger.warning("Razorpay credentials missing; order and payout endpoints will return 502")

    # ==========================================
    # BACKGROUND WORKER
    # ==========================================
    worker_task = None
    worker_running = True

    async def run_background_worker():
        poll_interval = settings.worker_poll_interval
        logger.info(f"Background worker started (interval: {poll_interval}s, batch: {settings.worker_batch_size})")

        while worker_running:
            try:
                # Sync sessions and gateway calls run off the event loop
                await asyncio.to_thread(_run_worker_cycle_once)
            except Exception as e:
                logger.error(f"Worker critical error: {e}")
            await asyncio.sleep(poll_interval)

    if settings.worker_enabled:
        worker_task = asyncio.create_task(run_background_worker())
    else:
        logger.info("Background worker disabled (WORKER_ENABLED=false)")

    yield

    logger.info("Shutting down gully-backend...")
    worker_running = False
    if worker_task:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
        logger.info("Background worker stopped")


app = FastAPI(
    title="Gully Payments API",
    description="Orders, payments, slot locking and payouts for the Gully sports platform",
    version=__version__,
    lifespan=lifespan
)

# Rate limiter state
app.state.limiter = limiter


# ================================
# CORS MIDDLEWARE - MUST BE FIRST!
# ================================
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_request_context(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestIdMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


# ================================
# ERROR HANDLERS
# ================================
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"success": False, "message": "Too many requests, please try again later"}
    )


app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_error_handler)


app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(bookings.router)
app.include_router(payouts.router)
app.include_router(health.router)


@app.get("/")
async def root():
    return {
        "message": "Gully Payments API",
        "version": __version__,
        "docs": "/docs",
        "status": "running",
    }
