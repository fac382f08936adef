"""
Application entrypoint: resource lifecycle, routers, and error mapping.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from jobflow import __version__
from jobflow.config import settings
from jobflow.db.helpers import DatabaseError
from jobflow.db.pool import db_pool
from jobflow.infrastructure.observability.logging import get_logger, log_request, setup_logging
from jobflow.models.domain.errors import JobflowError, ProviderUnavailable
from jobflow.routes import (
    admin_jobs,
    availability,
    billing,
    calendar,
    customer_jobs,
    health,
    recurrence,
)
from jobflow.services.billing.sync_service import billing_sync_service
from jobflow.services.infrastructure.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
        startup_tasks.append("redis")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        if "redis" in startup_tasks:
            await fast_redis.close()
        if "database_pool" in startup_tasks:
            await db_pool.close()
        raise

    yield

    logger.info("Application shutting down")

    try:
        await billing_sync_service.provider.close()
    except Exception as e:
        logger.error("Error closing billing client", error=str(e))

    # Redis first, database pool last (may have active connections)
    await fast_redis.close()
    try:
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))

    logger.info("All services closed")


app = FastAPI(
    title="Jobflow",
    description="Job, quote and invoice lifecycle engine for field-service work",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(admin_jobs.router)
app.include_router(customer_jobs.router)
app.include_router(recurrence.router)
app.include_router(availability.router)
app.include_router(calendar.router)
app.include_router(billing.router)


@app.exception_handler(JobflowError)
async def jobflow_error_handler(request: Request, exc: JobflowError):
    if isinstance(exc, ProviderUnavailable):
        logger.error(
            "Billing provider error",
            path=request.url.path,
            operation=exc.operation,
            job_id=exc.job_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
    else:
        logger.info(
            "Request rejected",
            path=request.url.path,
            error=str(exc),
            error_type=type(exc).__name__,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=422, content={"error": "ValidationError", "detail": str(exc)}
    )


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError):
    logger.error(
        "Database error",
        path=request.url.path,
        operation=exc.operation,
        error=str(exc),
    )
    return JSONResponse(
        status_code=503,
        content={"error": "DatabaseError", "detail": "Service temporarily unavailable"},
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    log_request(
        request.method,
        request.url.path,
        response.status_code,
        round((time.time() - start_time) * 1000, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
