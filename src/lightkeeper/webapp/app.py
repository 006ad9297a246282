"""FastAPI application for Lightkeeper."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import get_config
from ..context import AppContext, build_context
from .routes import auth_router, calendar_router, email_router, tasks_router


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Builds the service context unless one was supplied, starts the calendar
    and email schedulers, and tears everything down on shutdown.
    """
    logger.info("Starting Lightkeeper API")

    owns_context = getattr(app.state, "context", None) is None
    if owns_context:
        app.state.context = build_context()
    context: AppContext = app.state.context
    config = context.config
    logger.info(f"Database initialized at {context.db.db_path}")

    if context.scheduler is not None and config.scheduler_enabled:
        context.scheduler.start()
    else:
        logger.info("Calendar sync scheduler not started")

    if context.email_scheduler is not None and config.scheduler_enabled and config.email_scan_enabled:
        context.email_scheduler.start()
    else:
        logger.info("Email scan scheduler not started")

    yield

    logger.info("Shutting down Lightkeeper API")
    await context.aclose()
    if owns_context:
        app.state.context = None


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        context: Prebuilt services (tests); built from configuration on startup when None
    """
    config = context.config if context is not None else get_config()
    logging.getLogger("lightkeeper").setLevel(config.log_level)

    app = FastAPI(
        title="Lightkeeper",
        description="Task management with external calendar sync and email task ingestion",
        version=__version__,
        lifespan=lifespan
    )
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)
    app.include_router(tasks_router)
    app.include_router(calendar_router)
    app.include_router(email_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "lightkeeper",
            "version": __version__
        }

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "service": "Lightkeeper",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
            "api": {
                "auth": "/api/auth",
                "tasks": "/api/tasks",
                "calendar": "/api/calendar",
                "emails": "/api/emails",
            }
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Handle unexpected exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "type": "internal_error"
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "lightkeeper.webapp.app:app",
        host="127.0.0.1",
        port=8080,
        reload=True,
        log_level="info"
    )
