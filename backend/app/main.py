"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.otel import initialize_otel, instrument_app, setup_otel_logging
from app.db.redis import get_redis_client
from app.db.session import SessionLocal, engine, init_db
from app.services.ledger import create_ledger_adapter, set_ledger_adapter
from app.services.ledger_auth import get_ledger_auth_state
from app.services.webhook_setup import WebhookSetupError, ensure_webhook

# Import routers
from app.api import monitoring, reconciliation, webhooks

setup_logging()
logger = logging.getLogger(__name__)


async def ensure_startup_webhook() -> None:
    """Register the BTCPay webhook if missing; failures only leave a warning"""
    db = SessionLocal()
    try:
        status = await ensure_webhook(db)
    except (WebhookSetupError, ValueError) as e:
        logger.warning(f"BTCPay webhook setup skipped: {e}")
        return
    finally:
        db.close()
    if status.setup_complete:
        logger.info(f"BTCPay webhook delivering to {status.url}")
    else:
        logger.warning(
            f"BTCPay webhook setup incomplete, missing {', '.join(status.missing_events)}: "
            f"{'; '.join(status.errors)}"
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    # Ledger backend is fixed for the lifetime of the process
    set_ledger_adapter(create_ledger_adapter())
    if get_ledger_auth_state().is_halted():
        logger.warning("Ledger dispatch is halted - reconnect the ledger to resume")

    if settings.BTCPAY_WEBHOOK_URL and settings.BTCPAY_STORE_ID:
        await ensure_startup_webhook()

    background_tasks = []
    if settings.RUN_BACKGROUND_TASKS:
        from app.tasks.reconcile_worker import cancel_inflight_tasks, reconcile_worker_task
        from app.tasks.fallback_sweep import fallback_sweep_task

        background_tasks.append(asyncio.create_task(reconcile_worker_task()))
        logger.info("Reconciliation worker started")
        if settings.FALLBACK_SWEEP_ENABLED:
            background_tasks.append(asyncio.create_task(fallback_sweep_task()))
            logger.info(f"Fallback sweep started (every {settings.FALLBACK_SWEEP_INTERVAL}s)")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in background_tasks:
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)
    if settings.RUN_BACKGROUND_TASKS:
        await cancel_inflight_tasks()


# Create FastAPI app
app = FastAPI(
    title="Merchant Reconciler",
    description="Reconciles BTCPay Server payments into the accounting ledger",
    version="1.0.0",
    lifespan=lifespan
)

instrument_app(app, engine)

# Include routers
app.include_router(webhooks.router)
app.include_router(reconciliation.router)
app.include_router(monitoring.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
