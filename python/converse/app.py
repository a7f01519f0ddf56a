"""FastAPI application creation and configuration.

Registers exception handlers, the request-id middleware and routes, and
puts the shared collaborators on app.state:
- tables: the schema built from the configured table names
- event_sink: where lifecycle events are published after commit
- owner_registry: owner kinds accepted when creating owned conversations

Middleware runs in reverse order of registration; RequestIDMiddleware is
added last so it wraps everything else.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from converse.api.routes import create_api_router
from converse.config import get_settings
from converse.db.tables import Tables, get_tables
from converse.errors import ConverseError, ErrorCode
from converse.logging import get_logger
from converse.middleware.request_id import RequestIDMiddleware
from converse.responses import (
    converse_error_handler,
    error_response,
    http_exception_handler,
    unhandled_exception_handler,
)
from converse.services.events import EventSink, get_event_sink
from converse.services.owners import OwnerRegistry

logger = get_logger(__name__)


def create_owner_registry(kinds: list[str]) -> OwnerRegistry:
    """Register the default Conversable for each owner kind."""
    registry = OwnerRegistry()
    for kind in kinds:
        registry.register(kind)
    return registry


def create_app(
    *,
    tables: Tables | None = None,
    event_sink: EventSink | None = None,
    owner_registry: OwnerRegistry | None = None,
    log_requests: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        tables: Schema to operate on. Defaults to the configured table names.
        event_sink: Sink for lifecycle events. Defaults to the configured sink.
        owner_registry: Registry of owner kinds. Defaults to CONVERSE_OWNER_KINDS.
        log_requests: Whether to log an access entry per request.
    """
    settings = get_settings()

    app = FastAPI(
        title="Converse API",
        description="Persistence and replay of conversations with language models",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.tables = tables or get_tables()
    app.state.event_sink = event_sink or get_event_sink(settings)
    app.state.owner_registry = owner_registry or create_owner_registry(settings.owner_kind_list)

    app.add_exception_handler(ConverseError, converse_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request validation errors, including malformed JSON."""
        return JSONResponse(
            status_code=400,
            content=error_response(ErrorCode.E_INVALID_REQUEST, "Invalid request body"),
        )

    app.include_router(create_api_router())

    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)

    logger.info(
        "app_created",
        env=settings.converse_env.value,
        broadcasting_enabled=settings.broadcasting_enabled,
        owner_kinds=app.state.owner_registry.kinds(),
    )
    return app
