"""Thin API launcher.

This is the uvicorn entrypoint. All application logic lives in the converse package.
Run with: uvicorn main:app --reload

Logging is configured here (not in converse.app) so importing create_app has
no side effects and tests keep structlog's default configuration.
"""

from converse.app import create_app
from converse.config import get_settings
from converse.logging import configure_logging

configure_logging(json_format=get_settings().log_json)

app = create_app()

__all__ = ["app"]
