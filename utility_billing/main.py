"""Main application entry point."""

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Callable

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine

from utility_billing.api.dependencies import BillingContext
from utility_billing.api.water import router as water_router
from utility_billing.config import Settings, settings as default_settings
from utility_billing.services.db import build_engine, build_session_factory, create_schema
from utility_billing.services.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(
    config: Settings | None = None,
    engine: AsyncEngine | None = None,
    clock: Callable[[], date] = date.today,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Settings (default: from environment)
        engine: Async engine to use instead of one built from ``database_url``
        clock: Source of "today" for penalties and payment date checks
    """
    config = config or default_settings
    engine = engine or build_engine(config.database_url, config.database_echo)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await create_schema(engine)
        logger.info("Database schema ready")
        yield
        await engine.dispose()

    app = FastAPI(
        title=config.api_title,
        description="Water billing: penalties, payment allocation and credit balances",
        version=config.api_version,
        lifespan=lifespan,
    )
    app.state.billing = BillingContext(
        session_factory=build_session_factory(engine),
        settings=config,
        clock=clock,
    )
    app.include_router(water_router)

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint for monitoring."""
        return {"status": "ok"}

    return app


def main(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Run the API server."""
    load_dotenv()
    config = Settings()
    configure_logging(config)
    logger.info("Starting utility billing API on %s:%d", host, port)
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
