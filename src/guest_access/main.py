"""Main application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from guest_access import __version__
from guest_access.api.routes import router as api_router, webhook_router
from guest_access.config import Settings
from guest_access.core.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[Orchestrator] = None,
) -> FastAPI:
    """Build the FastAPI application.

    When an orchestrator is passed in, the caller owns its lifecycle and
    the app neither starts nor stops it.
    """
    settings = settings or (orchestrator.settings if orchestrator else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if orchestrator is not None:
            app.state.orchestrator = orchestrator
            yield
            return

        logger.info("Starting guest access service...")
        managed = Orchestrator(settings)
        await managed.initialize()
        await managed.start()
        app.state.orchestrator = managed
        logger.info("Application started successfully")

        yield

        logger.info("Shutting down guest access service...")
        await managed.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Guest Access",
        description="Door PIN lifecycle for rental bookings",
        version=__version__,
        lifespan=lifespan,
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.include_router(api_router, prefix="/api")
    app.include_router(webhook_router, prefix="/webhooks")
    return app


def main():
    """Run the application."""
    import uvicorn

    settings = Settings()
    configure_logging(settings)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
