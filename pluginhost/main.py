# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pluginhost.config import configure_logging, settings
from pluginhost.plugins import PluginHost
from pluginhost.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown events."""
    logger.info("Starting plugin host...")
    host = PluginHost.get_instance()
    await host.start()

    yield

    logger.info("Shutting down plugin host...")
    await host.shutdown()


app = FastAPI(
    title="Plugin Host",
    description="Runtime hosting independently authored plugins",
    version=settings.host_version,
    lifespan=lifespan,
)


@app.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Health check endpoint."""
    host = PluginHost.get_instance()
    return HealthResponse(
        status="healthy" if host.started else "starting",
        plugins_loaded=len(host.get_all_plugins()),
    )


# Import and include API router after it's created
from pluginhost.api.v1.router import api_router  # noqa: E402

app.include_router(api_router, prefix="/api/v1")
