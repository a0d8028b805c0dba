"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, jobs, stats
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.logging import setup_logging
from core.exceptions import QueueException, RecordNotFoundError, InvalidTransitionError, StoreError
from schemas.api import ErrorResponse
from jobs.scheduler import QueueScheduler
from typing import Optional
import logging

setup_logging()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Billwatch Queue API",
    description="Observability and operator surface for the notification and extraction job queue",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Created on startup when SCHEDULER_ENABLED
scheduler: Optional[QueueScheduler] = None


app.include_router(health.router)
app.include_router(jobs.router)
app.include_router(stats.router)


def _error_response(status_code: int, exc: QueueException) -> JSONResponse:
    body = ErrorResponse(error=exc.__class__.__name__, code=exc.code, detail=exc.message)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.exception_handler(RecordNotFoundError)
async def not_found_handler(request: Request, exc: RecordNotFoundError):
    return _error_response(404, exc)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    logger.warning(f"Rejected transition: {exc.message}")
    return _error_response(409, exc)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"Store unavailable: {exc.message}", extra={"error_context": exc.to_dict()})
    return _error_response(503, exc)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    global scheduler
    logger.info("Starting Billwatch Queue API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        scheduler = QueueScheduler()
        scheduler.start()
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Billwatch Queue API")
    if scheduler is not None:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Billwatch Queue API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "jobs": "/jobs",
            "job": "/jobs/{job_id}",
            "requeue": "/jobs/{job_id}/requeue",
            "stats": "/stats"
        }
    }
