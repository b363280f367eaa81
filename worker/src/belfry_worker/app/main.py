from __future__ import annotations

from fastapi import FastAPI
from loguru import logger

from ..services.composer import Composer
from ..services.library import get_library
from .jobs import JobManager
from .routes import router
from .settings import get_settings


def create_app() -> FastAPI:
    """Create and configure FastAPI instance."""
    settings = get_settings()
    composer = Composer(settings)
    manager = JobManager(composer)
    app = FastAPI(title="Belfry Worker", version="0.1.0")
    app.state.settings = settings
    app.state.composer = composer
    app.state.job_manager = manager
    logger.info(
        "Belfry worker ready: {} library methods, artifacts in {}",
        len(get_library().entries),
        settings.artifact_root,
    )
    app.include_router(router)
    return app


app = create_app()
