"""
FastAPI Application Entry Point.

This is the main application file for the Field Service Settlement Backend.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from backend.app.core.config import settings
from backend.app.api.v1.router import router as api_v1_router
from backend.app.db.session import engine, Base, AsyncSessionLocal
from backend.app.core.observability import ObservabilityMiddleware, configure_logging
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from backend.app.domain.settlement.runtime import build_settlement_components

# Import models to ensure they are registered with Base
from backend.app.models.user import User
from backend.app.models.audit_log import AuditLog
from backend.app.models.notification import Notification
from backend.app.models.technician import Technician
from backend.app.models.work_order import WorkOrder, WorkOrderEvidence
from backend.app.models.financial_settings import FinancialSettings
from backend.app.models.discount_confirmation import MunicipalityDiscountConfirmation
from backend.app.models.financial_transaction import FinancialTransaction, TransactionTechnician
from backend.app.models.failed_financial_transaction import FailedFinancialTransaction

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Configures logging.
    2. Creates database tables on startup.
    3. Wires the settlement components onto app.state.
    """
    configure_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    redis = None
    if settings.report_cache_backend == "redis":
        from backend.app.core.redis_client import redis_client, ping_redis
        if not await ping_redis():
            logger.warning("Redis unreachable at startup; reports will be served uncached until it recovers")
        redis = redis_client

    build_settlement_components(settings, AsyncSessionLocal, redis).attach(app)
    logger.info("Settlement components ready (cache backend: %s)", settings.report_cache_backend)
    yield


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Financial settlement of verified field-service work orders",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to the Field Service Settlement API",
        "docs": "/docs",
        "health": "/health",
    }
