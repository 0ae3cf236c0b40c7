"""Main FastAPI application for the notification delivery engine."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .database import async_session, init_db, close_db
from .exceptions import NotFoundError, PersistenceError, ValidationError
from .routers import devices_router, notifications_router
from .services import build_notification_service
from .services.inbox_stream import InboxStreamManager
from .services.scheduler import SchedulerService

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info(f"Starting carepush (push provider: {settings.push_provider})")

    await init_db()
    logger.info("Database initialized")

    stream = InboxStreamManager()
    service = build_notification_service(settings, async_session, stream=stream)
    scheduler = SchedulerService(
        service,
        interval_seconds=settings.scheduler_interval_seconds,
        max_concurrent=settings.scheduler_max_concurrent,
    )
    app.state.inbox_stream = stream
    app.state.notification_service = service
    app.state.scheduler = scheduler

    scheduler.start()

    yield

    # Shutdown
    scheduler.stop()
    await close_db()
    logger.info("Shutdown complete")


def register_exception_handlers(app: FastAPI):
    """Map engine errors onto HTTP status codes."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": exc.message, "field": exc.field})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": exc.message})

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error(f"Database error on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=503, content={"detail": "Database unavailable"})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="carepush",
        description="Push notification delivery, scheduling and inbox for the care platform",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict to your domain
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(devices_router)
    app.include_router(notifications_router)

    # Health check endpoint
    @app.get("/health")
    async def health_check(request: Request):
        scheduler = getattr(request.app.state, "scheduler", None)
        return {
            "status": "healthy",
            "push_provider": settings.push_provider,
            "scheduler_running": bool(scheduler and scheduler.running),
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
