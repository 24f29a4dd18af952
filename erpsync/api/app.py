from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from erpsync.api.routes.health import router as health_router
from erpsync.api.routes.sync import router as sync_router
from erpsync.core.config import get_settings
from erpsync.core.logging import configure_logging
from erpsync.db.init_db import initialize_database
from erpsync.erp.protocols import ErpClient, HandlerRegistry


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    yield


def create_app(erp_client: ErpClient, handlers: HandlerRegistry) -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.erp_client = erp_client
    app.state.handlers = handlers
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(sync_router, prefix="/api/v1")
    return app
