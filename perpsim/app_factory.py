from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from config import settings
from perpsim.api import backtest, health
from perpsim.data.database import initialize_database

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    initialize_database()
    logger.info("%s ready", settings.app_name)
    yield


def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, lifespan=_lifespan)
    app.include_router(health.router)
    app.include_router(backtest.router)
    return app
