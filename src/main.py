import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config.settings import settings
from src.core.observability import init_observability
from src.core.redis import close_redis
from src.domains.allocations.errors import AllocationError
from src.domains.allocations.router import router as allocations_router
from src.domains.trainers.router import router as trainers_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan events."""
    # Startup
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.APP_ENV, database_configured=bool(settings.DATABASE_URL))

    # Initialize database tables
    try:
        from src.config.database import init_db
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_init_failed", error=str(e), type=type(e).__name__)
        # Re-raise in production to prevent unhealthy startup
        if settings.is_production:
            raise

    yield
    # Shutdown
    await close_redis()
    logger.info("app_shutting_down", app_name=settings.APP_NAME)


async def allocation_error_handler(request: Request, exc: AllocationError) -> JSONResponse:
    """Map engine errors to their HTTP status with a structured body."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "allocation_error",
        path=request.url.path,
        error=exc.code,
        message=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    # Initialize observability (GlitchTip/Sentry)
    init_observability()

    app = FastAPI(
        title=settings.APP_NAME,
        description="TutorLink trainer assignment and session scheduling API",
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
        redirect_slashes=False,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Actor-Id", "X-Request-Id"],
    )

    app.add_exception_handler(AllocationError, allocation_error_handler)

    # Include routers
    app.include_router(allocations_router, prefix=f"{settings.API_V1_PREFIX}/allocations", tags=["Allocations"])
    app.include_router(trainers_router, prefix=f"{settings.API_V1_PREFIX}/trainers", tags=["Trainers"])

    # Health check endpoint
    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.APP_ENV,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
