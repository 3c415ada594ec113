"""Middleware registration."""

from fastapi import FastAPI

from msl.config import Settings
from msl.middleware.error_handler import setup_error_handlers
from msl.middleware.logging import setup_logging
from msl.middleware.request_context import RequestContextMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure logging, then register error handlers and request context."""
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestContextMiddleware)
