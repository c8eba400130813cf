"""FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from paperforge.api import knowledge, papers, questions, sections, usage
from paperforge.config import settings
from paperforge.exceptions import (
    GenerationException,
    KnowledgeConflictException,
    LLMProviderException,
    NotFoundException,
    PaperForgeException,
    RetryExhaustedException,
    StateTransitionException,
    UnrecoverableParseError,
    ValidationException,
)
from paperforge.middleware import RequestIDMiddleware
from paperforge.rate_limit import limiter
from paperforge.utils.error_utils import get_safe_error_detail, safe_details

VERSION = "0.1.0"

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

# Exception type to HTTP status, most specific first
_STATUS_CODES = (
    (ValidationException, status.HTTP_400_BAD_REQUEST),
    (StateTransitionException, status.HTTP_400_BAD_REQUEST),
    (NotFoundException, status.HTTP_404_NOT_FOUND),
    (KnowledgeConflictException, status.HTTP_409_CONFLICT),
    (LLMProviderException, status.HTTP_502_BAD_GATEWAY),
    (UnrecoverableParseError, status.HTTP_502_BAD_GATEWAY),
    (GenerationException, status.HTTP_502_BAD_GATEWAY),
    (RetryExhaustedException, status.HTTP_502_BAD_GATEWAY),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    logger.info("Starting PaperForge API...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(
        f"Models: generation={settings.generation_model}, "
        f"proofreading={settings.proofreading_model}, analysis={settings.analysis_model}"
    )

    try:
        from paperforge.db.database import init_db

        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}", exc_info=True)
        raise

    yield
    logger.info("Shutting down PaperForge API...")


app = FastAPI(
    title="PaperForge",
    description="Exam paper generation with LLM question drafting and proofreading",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Configure CORS
cors_origins = [
    origin.strip()
    for origin in settings.cors_origins.split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins if cors_origins else ["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.add_middleware(RequestIDMiddleware)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def status_code_for(exc: PaperForgeException) -> int:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Exception handlers
@app.exception_handler(PaperForgeException)
async def custom_exception_handler(request: Request, exc: PaperForgeException):
    """Handle custom application exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        f"Application error [{request_id}]: {exc.message}",
        exc_info=status_code >= 500,
        extra={"request_id": request_id, "details": exc.details},
    )

    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": exc.__class__.__name__,
                "message": get_safe_error_detail(exc, settings.is_production),
                "details": safe_details(exc.details, settings.is_production),
                "request_id": request_id,
            }
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(
        f"Validation error [{request_id}]: {exc.errors()}",
        extra={"request_id": request_id},
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
        content={
            "error": {
                "code": "ValidationError",
                "message": "Request validation failed",
                "details": jsonable_errors(exc),
                "request_id": request_id,
            }
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    """Drop non-serializable ``ctx`` entries (e.g. the raised ValueError) from pydantic errors."""
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(error)
    return errors


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.exception(
        f"Unexpected error [{request_id}]: {str(exc)}",
        extra={"request_id": request_id},
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "InternalServerError",
                "message": "An unexpected error occurred",
                "details": {},
                "request_id": request_id,
            }
        },
    )


# Include routers
app.include_router(papers.router)
app.include_router(sections.router)
app.include_router(questions.router)
app.include_router(knowledge.router)
app.include_router(usage.router)


# Logging middleware for requests
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.info(
        f"Request [{request_id}]: {request.method} {request.url.path}",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        },
    )

    response = await call_next(request)

    logger.info(
        f"Response [{request_id}]: {response.status_code}",
        extra={"request_id": request_id, "status_code": response.status_code},
    )

    return response


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns:
        Overall status plus database connectivity and OpenAI key checks
    """
    from paperforge.db.database import engine

    checks = {}
    overall_status = "healthy"

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {str(e)[:50]}"
        overall_status = "degraded"
        logger.warning(f"Database health check failed: {e}")

    # Key format only; no API call for speed
    if settings.openai_api_key.startswith("sk-"):
        checks["openai_api"] = "ok"
    else:
        checks["openai_api"] = "warning: invalid key format"
        overall_status = "degraded"

    return {
        "status": overall_status,
        "version": VERSION,
        "service": "paperforge",
        "checks": checks,
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "PaperForge API",
        "version": VERSION,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "paperforge.main:app",
        host=settings.host,
        port=settings.port,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
    )
