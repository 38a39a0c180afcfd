"""FastAPI application factory for Inkvault.

Creates the REST API application with:
- CORS middleware for cross-origin requests
- Request logging middleware with correlation IDs
- Database connection lifecycle management
- Health and embedding queue routers

Example usage:
    >>> from inkvault.config import InkvaultConfig
    >>> from inkvault.web.app import create_app
    >>>
    >>> app = create_app(InkvaultConfig())
    >>> uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from inkvault import __version__
from inkvault.config import InkvaultConfig
from inkvault.database.connection import get_engine, get_session_factory
from inkvault.logging import get_logger
from inkvault.web.middleware import RequestLoggingMiddleware
from inkvault.web.routes.health import create_health_router
from inkvault.web.routes.queue import create_queue_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the database engine on startup and dispose it on shutdown.

    The engine and session factory are stored in app.state for the
    route dependencies.

    Args:
        app: FastAPI application instance

    Yields:
        None after startup
    """
    config: InkvaultConfig = app.state.config

    logger.info("app_startup_begin", host=config.web.host, port=config.web.port)

    engine = get_engine(config.database)
    app.state.engine = engine
    app.state.session_factory = get_session_factory(engine)

    logger.info(
        "database_pool_initialized",
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
    )

    yield

    logger.info("app_shutdown_begin")
    await engine.dispose()
    logger.info("database_pool_disposed")


def create_app(config: InkvaultConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Optional InkvaultConfig. If None, creates default config.

    Returns:
        Configured FastAPI application instance.
    """
    if config is None:
        config = InkvaultConfig()

    app = FastAPI(
        title="Inkvault",
        version=__version__,
        description="Article embedding queue and vector index",
        lifespan=lifespan,
    )

    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(create_health_router())
    app.include_router(create_queue_router())

    logger.info(
        "app_created",
        cors_origins=config.web.cors_origins,
        version=__version__,
    )

    return app
