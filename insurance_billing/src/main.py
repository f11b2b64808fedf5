from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import REGISTRY, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .api.dependencies import close_invoicing_client
from .api.routes import billing_settings_routes, claims_routes, payers_routes, payments_routes
from .core.config.settings import get_settings
from .core.database.db_session import engine as async_engine
from .core.database.db_session import get_db_session
from .core.exceptions import (
    BillingError,
    ConflictError,
    ExternalSyncError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .core.logging_config import setup_logging

setup_logging()
logger = structlog.get_logger(__name__)


async def warmup_db_pool():
    logger.info("Application startup: warming up database connection pool...")
    app_settings = get_settings()
    warmup_count = 1 if app_settings.DATABASE_URL.startswith("sqlite") else min(app_settings.DB_POOL_SIZE, 3)
    try:
        for i in range(warmup_count):
            async with async_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            logger.debug("DB warmup connection successful.", connection=i + 1, total=warmup_count)
        logger.info("Database connection pool warmed up.", connections=warmup_count)
    except Exception as e:
        logger.error("Error during database connection pool warmup", error=str(e), exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await warmup_db_pool()
    yield
    logger.info("Application shutdown: closing invoicing client.")
    await close_invoicing_client()


app = FastAPI(title="Insurance Billing", version="1.0.0", lifespan=lifespan)

app.include_router(claims_routes.router, prefix="/api/v1/claims", tags=["Claims"])
app.include_router(payments_routes.router, prefix="/api/v1/insurance-payments", tags=["Insurance Payments"])
app.include_router(payers_routes.router, prefix="/api/v1/payers", tags=["Payers"])
app.include_router(billing_settings_routes.router, prefix="/api/v1/billing-settings", tags=["Billing Settings"])


# --- Domain error mapping ---

ERROR_STATUS_CODES = {
    NotFoundError: 404,
    ValidationError: 422,
    InvalidTransitionError: 409,
    ConflictError: 409,
    ExternalSyncError: 502,
}


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)), 400
    )
    body: Dict[str, Any] = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, ValidationError):
        body["errors"] = exc.errors
    elif isinstance(exc, InvalidTransitionError):
        body["from_status"] = exc.from_status
        body["to_status"] = exc.to_status
    elif isinstance(exc, ExternalSyncError) and exc.invoice_ref:
        body["invoice_ref"] = exc.invoice_ref
    logger.info("Request failed with domain error", path=request.url.path, status_code=status_code,
                error=type(exc).__name__, detail=exc.message)
    return JSONResponse(status_code=status_code, content=body)


# --- Monitoring ---

@app.get("/health", tags=["Monitoring"])
async def health_check():
    logger.debug("Health check accessed")
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": app.version,
    }


@app.get("/metrics", tags=["Monitoring"])
async def get_metrics():
    """
    Exposes Prometheus metrics.
    """
    logger.debug("Metrics endpoint called.")
    return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


@app.get("/ready", tags=["Monitoring"])
async def readiness_check(db: AsyncSession = Depends(get_db_session)) -> Dict[str, Any]:
    checks = {"database": {"status": "unhealthy", "details": "Check not performed"}}

    try:
        result = await db.execute(text("SELECT 1"))
        if result.scalar_one() == 1:
            checks["database"]["status"] = "healthy"
            checks["database"]["details"] = "Successfully connected and queried."
        else:
            checks["database"]["details"] = "Query executed but result was unexpected."
    except Exception as e:
        logger.error("Readiness check: Database connection failed", error=str(e), exc_info=False)
        checks["database"]["details"] = f"Connection failed: {str(e)}"

    if checks["database"]["status"] != "healthy":
        logger.warn("Readiness check failed", overall_status=checks)
        raise HTTPException(status_code=503, detail=checks)

    return checks
