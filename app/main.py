from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from app.api import bookings, deliveries, invoices, quotes, rfqs, warehouses, workflow
from app.core.config import settings
from app.core.errors import Conflict, Unexpected, WorkflowError
from app.core.logging import get_logger, setup_logging
from app.db.session import SessionLocal, init_db

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    init_db()
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(quotes.router)
app.include_router(workflow.router)
app.include_router(warehouses.router)
app.include_router(rfqs.router)
app.include_router(rfqs.rates_router)
app.include_router(bookings.router)
app.include_router(bookings.cargo_router)
app.include_router(bookings.carting_router)
app.include_router(deliveries.requests_router)
app.include_router(deliveries.orders_router)
app.include_router(deliveries.reports_router)
app.include_router(invoices.router)


# ============= ERROR HANDLERS =============

@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_response_payload())


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    # A unique constraint caught a race the service-level checks missed
    logger.warning(f"{request.method} {request.url.path} hit a constraint: {exc.orig}")
    error = Conflict("The operation conflicts with a concurrent change")
    return JSONResponse(status_code=error.http_status, content=error.to_response_payload())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    error = Unexpected()
    return JSONResponse(status_code=error.http_status, content=error.to_response_payload())


# ============= HEALTH =============

@app.get("/health", tags=["Health"])
async def health_check():
    """Health check with database connectivity."""
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {"database": "unknown"},
    }

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1")).scalar()
        health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {e}"
    finally:
        db.close()

    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)
    return health_status


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
