"""FastAPI application entrypoint for the Chatforge chat service."""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatforge.api import chat_router, dashboard_router, internal_router
from chatforge.config import settings
from chatforge.database import check_database, init_db
from chatforge.errors import ChatforgeError
from chatforge.log_config import configure_logging
from chatforge.services.cleanup_scheduler import CleanupScheduler
from chatforge.services.rate_limit_service import RateLimitStore

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown lifecycle events."""
    logger.info("Starting chat service", environment=settings.environment)
    try:
        await init_db()
    except Exception as exc:
        logger.error("Startup failure", error=str(exc))
        raise

    store = getattr(app.state, "rate_limit_store", None) or RateLimitStore()
    app.state.rate_limit_store = store

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = CleanupScheduler()
        scheduler.start()
    app.state.cleanup_scheduler = scheduler

    yield

    logger.info("Shutting down chat service")
    if scheduler is not None:
        scheduler.stop()
    await store.close()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Multi-tenant chatbot sessions, quotas and lead capture",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_hosts if settings.allowed_hosts != ["*"] else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatforgeError)
async def chatforge_exception_handler(request: Request, exc: ChatforgeError):
    logger.warning(
        "Request rejected",
        code=exc.code,
        status_code=exc.status_code,
        detail=exc.message,
        path=str(request.url),
        method=request.method,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=str(request.url),
        method=request.method,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "status_code": exc.status_code},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=str(request.url),
        method=request.method,
        error=str(exc),
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error" if not settings.debug else str(exc)},
    )


@app.get("/health")
async def health() -> dict:
    return {
        "status": "healthy",
        "version": settings.app_version,
        "app_name": settings.app_name,
    }


@app.get("/health/detailed")
async def detailed_health(request: Request) -> dict:
    components = {"database": "unhealthy", "redis": "unhealthy", "scheduler": "disabled"}

    components["database"] = "healthy" if check_database() else "unhealthy"

    store = getattr(request.app.state, "rate_limit_store", None)
    if store is not None:
        components["redis"] = "healthy" if await store.health_check() else "unhealthy"

    scheduler = getattr(request.app.state, "cleanup_scheduler", None)
    if scheduler is not None:
        components["scheduler"] = "running" if scheduler.scheduler.running else "stopped"

    degraded = components["database"] != "healthy" or components["redis"] != "healthy"
    return {
        "status": "degraded" if degraded else "healthy",
        "version": settings.app_version,
        "app_name": settings.app_name,
        "components": components,
    }


app.include_router(chat_router, prefix="/api/v1")
app.include_router(dashboard_router, prefix="/api/v1")
app.include_router(internal_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chatforge.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
