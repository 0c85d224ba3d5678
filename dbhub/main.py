"""DBHub API - FastAPI application."""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dbhub.config import settings
from dbhub.errors import DBHubError
from dbhub.metrics import ERROR_COUNT
from dbhub.middleware.metrics import MetricsMiddleware, normalize_path
from dbhub.routers import backend, databases, metrics, uploads, users
from dbhub.services import Services


def setup_logging() -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if not settings.debug else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.INFO if not settings.debug else logging.DEBUG
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


async def cleanup_cache_task(services: Services):
    """Background task to periodically remove expired result cache entries."""
    logger = structlog.get_logger()
    cleanup_interval = services.config.cache_cleanup_interval_seconds

    while True:
        try:
            await asyncio.sleep(cleanup_interval)
            count = await asyncio.to_thread(services.cache.purge_expired)
            if count > 0:
                logger.info("cache_cleanup_completed", deleted_count=count)
        except asyncio.CancelledError:
            logger.info("cache_cleanup_task_cancelled")
            break
        except Exception as e:
            logger.error("cache_cleanup_failed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger = structlog.get_logger()
    logger.info(
        "application_startup",
        version=settings.api_version,
        debug=settings.debug,
        data_dir=str(settings.data_dir),
        object_store_backend=settings.object_store_backend,
    )

    for path in settings.storage_paths.values():
        path.mkdir(parents=True, exist_ok=True)

    try:
        services = Services.from_settings(settings)
        logger.info("metadata_db_initialized", path=str(settings.metadata_db_path))
    except Exception as e:
        logger.error("metadata_db_init_failed", error=str(e), exc_info=True)
        raise
    app.state.services = services

    cache_cleanup_task = asyncio.create_task(cleanup_cache_task(services))
    logger.info("background_tasks_started", tasks=["cache_cleanup"])

    yield

    cache_cleanup_task.cancel()
    try:
        await cache_cleanup_task
    except asyncio.CancelledError:
        pass

    logger.info("application_shutdown")


# Setup logging before creating app
setup_logging()
logger = structlog.get_logger()

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description="""
DBHub API: versioned SQLite databases, shared publicly or kept private.

- Upload SQLite files as new versions of a database
- Browse tables, export CSV, fetch chart data
- Download any visible version byte for byte
- Star databases and list a user's databases

## Authentication

Send `Authorization: Bearer <api key>`. Read endpoints also work
anonymously and then only show public versions. Registering users
requires the admin key.
    """,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add metrics middleware (for Prometheus request instrumentation)
app.add_middleware(MetricsMiddleware)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log all requests with timing and request ID."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    start_time = time.perf_counter()

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
    )

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )

    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(DBHubError)
async def dbhub_error_handler(request: Request, exc: DBHubError):
    """Turn domain errors into the API's error body."""
    ERROR_COUNT.labels(type=exc.error, endpoint=normalize_path(request.url.path)).inc()

    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_failed",
        method=request.method,
        path=request.url.path,
        status_code=exc.status_code,
        error=exc.error,
        message=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    endpoint = normalize_path(request.url.path)
    error_type = type(exc).__name__

    ERROR_COUNT.labels(type=error_type, endpoint=endpoint).inc()

    logger.error(
        "unhandled_exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=error_type,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": str(exc) if settings.debug else "An internal error occurred",
        },
    )


app.include_router(backend.router)
app.include_router(databases.router)
app.include_router(uploads.router)
app.include_router(users.router)
app.include_router(metrics.router)


@app.get("/", include_in_schema=False)
async def root():
    """Root endpoint - service summary."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "health": "/health",
        "docs": "/docs" if settings.debug else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dbhub.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
