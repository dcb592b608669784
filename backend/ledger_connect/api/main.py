"""
FastAPI application factory.

    uvicorn ledger_connect.api.main:app

Middleware order (outermost first): ErrorHandlerMiddleware, then
TenantContextMiddleware. AppError raised inside routes is rendered by the
app_error_handler exception handler.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ledger_connect.api.routes import health, integrations, tenants, webhooks
from ledger_connect.config.settings import get_settings
from ledger_connect.container import ServiceContainer
from ledger_connect.middleware.tenant_context import TenantContextMiddleware
from ledger_connect.platform.errors import AppError, ErrorHandlerMiddleware, app_error_handler
from ledger_connect.platform.logging_config import configure_logging

logger = logging.getLogger(__name__)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the app. Without a container, one is built from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "container", None) is None:
            settings = get_settings()
            configure_logging(settings.log_level)
            app.state.container = ServiceContainer.from_settings(settings)
        await app.state.container.startup()
        try:
            yield
        finally:
            await app.state.container.shutdown()

    app = FastAPI(title="Ledger Connect", lifespan=lifespan)
    app.state.container = container

    app.add_exception_handler(AppError, app_error_handler)
    app.add_middleware(TenantContextMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)

    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(integrations.router)
    app.include_router(tenants.router)
    return app


app = create_app()
