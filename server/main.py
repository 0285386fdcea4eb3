"""
FastAPI backend for workflow compilation and resilient execution.

Compiles workflow graphs into cached execution plans and runs them through a
durable priority queue guarded by rate limits and circuit breakers, with
retries, a dead letter queue and automated self-healing.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from routers import dlq, healing, queue, workflow
from services.exceptions import CompilationError

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting workflow engine")

    app_settings = container.settings()
    await container.database().startup()
    await container.cache().startup()

    healer = container.self_healer()
    if app_settings.self_healing_enabled:
        healer.attach(container.event_bus())

    processor = container.queue_processor()
    if app_settings.queue_enabled:
        await processor.start()
        logger.info("Execution queue processor started",
                    poll_interval=app_settings.queue_poll_interval)

    set_startup_time()
    logger.info("Services started successfully")
    yield

    # Shutdown
    await processor.stop()
    healer.detach()
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Workflow Engine",
    version="1.0.0",
    description="Workflow compilation, resilient queue execution and self-healing",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


@app.exception_handler(CompilationError)
async def compilation_error_handler(request: Request, exc: CompilationError):
    logger.warning("Workflow compilation failed", path=request.url.path, error=str(exc))
    return ORJSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": str(exc),
            "cycles": getattr(exc, "cycles", []),
            "details": exc.details,
        }
    )


# Add exception handler middleware BEFORE CORS to catch all errors
class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error_type=type(e).__name__, error=str(e), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )

app.add_middleware(CatchAllExceptionsMiddleware)

# Add CORS middleware (must be AFTER exception middleware)
logger.info("Configuring CORS middleware",
            origins_count=len(settings.cors_origins),
            origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(workflow.router)
app.include_router(queue.router)
app.include_router(dlq.router)
app.include_router(healing.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    return await get_health_status(
        container.database(),
        container.cache(),
        container.settings(),
        processor=container.queue_processor(),
    )


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting workflow engine",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
        workers=1 if settings.debug else settings.workers
    )
