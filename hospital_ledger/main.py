from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
import time
import logging
import os

from .api.v1.appointments import router as appointments_router
from .api.v1.billing import router as billing_router
from .api.v1.bookings import router as bookings_router
from .api.v1.tokens import router as tokens_router
from .core.config import settings
from .core.database import db_healthcheck, init_db
from .core.errors import (
    InvariantViolation, LedgerError, LedgerPermissionError, NotFoundError,
    TransientNetworkError, ValidationFailure
)

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    description="Hospital appointment booking with sequential tokens, billing reconciliation and offline booking",
    openapi_url="/api/v1/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Middleware setup
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Only add TrustedHostMiddleware in production, not in testing
if not os.getenv("TESTING"):
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"]
    )

# Custom middleware for request logging and timing
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    # Log request
    logger.info(
        f"{request.method} {request.url.path} - "
        f"Status: {response.status_code} - "
        f"Time: {process_time:.4f}s"
    )

    return response

# Exception handlers
LEDGER_ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND, "Not Found"),
    (ValidationFailure, status.HTTP_400_BAD_REQUEST, "Invalid Request"),
    (LedgerPermissionError, status.HTTP_403_FORBIDDEN, "Forbidden"),
    (TransientNetworkError, status.HTTP_503_SERVICE_UNAVAILABLE, "Service Unavailable"),
    (InvariantViolation, status.HTTP_409_CONFLICT, "Conflict"),
]

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    status_code, error = status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error"
    for error_type, code, label in LEDGER_ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code, error = code, label
            break

    log = logger.error if status_code >= 500 else logger.warning
    log(f"{type(exc).__name__}: {exc.message} ({exc.context()})")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": exc.message,
            "operation": exc.operation,
            "entity": exc.entity
        }
    )

@app.exception_handler(404)
async def not_found_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "message": getattr(exc, "detail", None) or "The requested resource was not found",
            "path": str(request.url.path)
        }
    )

@app.exception_handler(500)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error(f"Internal server error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred"
        }
    )

# Include routers
app.include_router(bookings_router, prefix="/api/v1")
app.include_router(tokens_router, prefix="/api/v1")
app.include_router(appointments_router, prefix="/api/v1")
app.include_router(billing_router, prefix="/api/v1")

# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize application on startup."""
    logger.info("Starting Hospital Booking Ledger...")

    db_url = settings.get_database_url
    db_type = "PostgreSQL" if "postgresql" in db_url else "SQLite" if "sqlite" in db_url else "Unknown"
    logger.info(f"Using {db_type} database")

    # A store that is down at startup is not fatal: bookings go to the offline queue
    ok, error = db_healthcheck()
    if not ok:
        logger.warning(f"Appointment store unreachable at startup: {error}")
        return

    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise

    logger.info("Application startup complete")

@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on application shutdown."""
    logger.info("Shutting down Hospital Booking Ledger...")

# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint; reports whether bookings are currently going online."""
    online, _ = db_healthcheck()
    return {
        "status": "healthy" if online else "degraded",
        "store": "online" if online else "offline",
        "timestamp": time.time(),
        "version": settings.VERSION
    }

# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "Welcome to the Hospital Booking Ledger API",
        "version": settings.VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health"
    }

# API Info endpoint
@app.get("/api/v1/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.VERSION,
        "endpoints": {
            "bookings": "/api/v1/bookings",
            "tokens": "/api/v1/tokens",
            "appointments": "/api/v1/appointments",
            "invoices": "/api/v1/invoices",
            "payments": "/api/v1/payments",
            "docs": "/docs",
            "openapi": "/api/v1/openapi.json"
        }
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "hospital_ledger.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info"
    )
