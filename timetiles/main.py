"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from timetiles.api.v1 import api_router
from timetiles.core.config import get_settings
from timetiles.schemas.common import HealthResponse
from timetiles.services.exceptions import (
    ConfigurationError,
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    QuotaExceededError,
    SchemaLockBusyError,
    ServiceError,
    TransientExternalFailure,
    ValidationError,
)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Schema is managed by Alembic; the import worker and scheduler run as
    # a separate process (python -m timetiles.worker)
    yield


app = FastAPI(
    title=settings.app_name,
    description="Imports geolocated events from files and scheduled URLs, and serves map clusters and histograms",
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS middleware - configurable via settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handlers for service layer exceptions
@app.exception_handler(NotFoundError)
async def not_found_exception_handler(request: Request, exc: NotFoundError):
    """Convert NotFoundError to 404 response."""
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(ConflictError)
async def conflict_exception_handler(request: Request, exc: ConflictError):
    """Convert ConflictError to 409 response."""
    return JSONResponse(status_code=409, content={"detail": exc.message})


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    """Convert ValidationError to 400 response."""
    content = {"detail": exc.message}
    if exc.field:
        content["field"] = exc.field
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(InvalidStateTransitionError)
async def invalid_state_exception_handler(request: Request, exc: InvalidStateTransitionError):
    """Convert InvalidStateTransitionError to 409 response."""
    return JSONResponse(status_code=409, content={"detail": exc.message})


@app.exception_handler(SchemaLockBusyError)
async def schema_lock_exception_handler(request: Request, exc: SchemaLockBusyError):
    """Convert SchemaLockBusyError to 409 response."""
    return JSONResponse(status_code=409, content={"detail": exc.message})


@app.exception_handler(QuotaExceededError)
async def quota_exception_handler(request: Request, exc: QuotaExceededError):
    """Convert QuotaExceededError to 429 response."""
    return JSONResponse(
        status_code=429,
        content={
            "detail": exc.message,
            "quota_type": str(exc.quota_type),
            "limit": exc.limit,
            "current": exc.current,
        },
    )


@app.exception_handler(TransientExternalFailure)
async def transient_exception_handler(request: Request, exc: TransientExternalFailure):
    """Convert TransientExternalFailure to 503 response."""
    return JSONResponse(status_code=503, content={"detail": exc.message})


@app.exception_handler(ConfigurationError)
async def configuration_exception_handler(request: Request, exc: ConfigurationError):
    """Convert ConfigurationError to 500 response."""
    return JSONResponse(status_code=500, content={"detail": exc.message})


@app.exception_handler(ServiceError)
async def service_exception_handler(request: Request, exc: ServiceError):
    """Convert generic ServiceError to 500 response."""
    return JSONResponse(status_code=500, content={"detail": exc.message})


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", app=settings.app_name, version=settings.app_version)


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "app": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "api": settings.api_v1_prefix,
    }


# Include API v1 router
app.include_router(api_router, prefix=settings.api_v1_prefix)
