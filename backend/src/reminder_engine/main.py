from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import pipeline, router
from .config import get_settings, runtime_config_issues
from .logging_setup import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    pipeline.start()
    try:
        yield
    finally:
        pipeline.stop()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)
    for issue in runtime_config_issues(settings):
        logger.warning("configuration warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=_lifespan)
    app.include_router(router)
    return app


app = create_app()
