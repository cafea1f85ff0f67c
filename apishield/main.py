"""
Application entry point.

Creates a FastAPI application and wires together:
- The request pipeline (rate limiting, sanitization, headers, error envelope)
- Logging configuration
- The health router

Host applications that own their FastAPI instance call
``install_request_pipeline`` directly instead.
No business logic belongs here.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from apishield.core.config import Settings, settings as default_settings
from apishield.interfaces.health import router as health_router
from apishield.shared.logging import DiagnosticSink, configure_logging
from apishield.shared.pipeline import install_request_pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: flush diagnostic records on shutdown."""
    yield
    sink = getattr(app.state, "diagnostic_sink", None)
    if sink is not None:
        sink.stop()


def create_app(
    settings: Optional[Settings] = None,
    diagnostic_sink: Optional[DiagnosticSink] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    This is the composition root of the application.

    Args:
        settings: Pipeline configuration. Defaults to environment settings.
        diagnostic_sink: Destination for diagnostic records.

    Returns:
        A fully configured FastAPI application instance.
    """
    settings = settings or default_settings
    configure_logging(level=settings.log_level)

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        lifespan=lifespan,
    )

    # --- Request pipeline ---
    install_request_pipeline(app, settings, diagnostic_sink=diagnostic_sink)

    # --- Routers ---
    app.include_router(health_router, prefix="/api/v1")

    return app


app = create_app()
