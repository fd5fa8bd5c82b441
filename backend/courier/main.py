"""
Courier Backend — FastAPI Application Factory
===============================================

What:  Creates and configures the FastAPI application: the ingress pipeline
       middleware, the error classifier chain, the health probe and the
       versioned business routes.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
       Collaborators with a lifecycle (Telemetry) are constructed by the
       caller and passed in.
Who:   Called by uvicorn through the module-level `app` (uvicorn courier.main:app)
       and by the test suite with test settings and routers.

Application Architecture:
    ┌─────────────────────────────────────────────────────────────┐
    │                        FastAPI App                          │
    │                                                             │
    │  Middleware Chain (outermost first):                        │
    │  Content-Type → Trace → Security Hdrs → Cache → CORS        │
    │  → Logging → Error Boundary → Body Decoder → Session Trace  │
    │                                                             │
    │  Routes:                                                    │
    │  GET /  (health)      /v1/...  (callbacks + business)       │
    │                                                             │
    │  Error Classifier Chain:                                    │
    │  Validation→400 │ Malformed body→400 │ ApiError→as raised   │
    │  │ anything else → report fault → 500 with tracking ID      │
    └─────────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:   configure logging, start telemetry
    Shutdown:  flush and stop telemetry
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable, Iterable, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from courier import __version__
from courier.config import Settings, settings as default_settings
from courier.exceptions import ApiError
from courier.log_format import StructuredFormatter
from courier.middleware.body_decoder import BodyDecoderMiddleware, BodyVerifier
from courier.middleware.content_type import ContentTypeOverrideMiddleware
from courier.middleware.errors import ErrorHandlingMiddleware
from courier.middleware.headers import CacheControlMiddleware, SecurityHeadersMiddleware
from courier.middleware.logging import RequestLoggingMiddleware
from courier.middleware.origin import OriginPolicy, OriginPolicyMiddleware
from courier.middleware.session_trace import (
    IdentityResolver,
    SessionTraceMiddleware,
    session_identity,
)
from courier.middleware.trace_context import TraceContextMiddleware
from courier.routes import callbacks
from courier.routes.health import build_health_router
from courier.services.error_chain import ErrorClassifierChain
from courier.services.telemetry import Telemetry

logger = logging.getLogger(__name__)

Lifespan = Callable[[FastAPI], AsyncContextManager[None]]


# ══════════════════════════════════════════════════════════════════════════
# Structured Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(settings: Settings) -> None:
    """
    Configure logging for the entire application.

    LOG_FORMAT=json renders one JSON object per line (StructuredFormatter),
    LOG_FORMAT=text a plain line per record. Output goes to stdout.
    """
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        ))

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        handlers=[handler],
        force=True,
    )

    # Request logging is ours; keep third-party access logs quiet
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

def build_lifespan(settings: Settings, telemetry: Telemetry) -> Lifespan:
    """Lifespan that owns logging setup and the telemetry lifecycle."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # ── Startup ───────────────────────────────────────────────────────
        setup_logging(settings)
        logger.info("Courier Backend %s starting up (%s)", __version__, settings.environment)
        telemetry.start()
        logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)

        yield

        # ── Shutdown ──────────────────────────────────────────────────────
        logger.info("Courier Backend shutting down...")
        telemetry.shutdown()
        logger.info("Shutdown complete.")

    return lifespan


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI, chain: ErrorClassifierChain) -> None:
    """
    Route errors that FastAPI catches itself into the classifier chain.

    Schema validation failures, ApiErrors raised by route handlers and the
    router's own 404/405 are caught inside routing; everything else reaches
    ErrorHandlingMiddleware. Both end up in the same `chain.handle`.
    """

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return await chain.handle(request, exc)

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return await chain.handle(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        response = await chain.handle(request, exc)
        # e.g. Allow on 405
        if exc.headers:
            response.headers.update(exc.headers)
        return response


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    settings: Optional[Settings] = None,
    telemetry: Optional[Telemetry] = None,
    routers: Iterable[APIRouter] = (),
    lifespan: Optional[Lifespan] = None,
    body_verifier: Optional[BodyVerifier] = None,
    identity_resolver: IdentityResolver = session_identity,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings:           Configuration (default: the process-wide singleton)
        telemetry:          Tracing service; its start/shutdown belong to the caller
                            (default: built from settings, left unstarted)
        routers:            Business routers, mounted under settings.api_prefix
        lifespan:           Optional lifespan context (see build_lifespan)
        body_verifier:      Optional hook rejecting raw bodies before decoding
        identity_resolver:  Reads the caller identity from the ASGI scope
    """
    settings = settings or default_settings
    telemetry = telemetry or Telemetry.from_settings(settings)
    chain = ErrorClassifierChain(fault_reporter=telemetry.fault_reporter)
    exempt_paths = [settings.health_path]

    app = FastAPI(
        title="Courier API",
        description="Message delivery API.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.telemetry = telemetry
    app.state.error_chain = chain

    # ── Register Middleware ───────────────────────────────────────────────
    # Middleware executes in REVERSE order of addition: the last one added
    # sees the request first. Listed here innermost first.

    app.add_middleware(
        SessionTraceMiddleware,
        resolver=identity_resolver,
        exempt_paths=exempt_paths,
    )

    app.add_middleware(
        BodyDecoderMiddleware,
        text_routes=settings.text_body_routes_list,
        text_limit=settings.text_body_size_limit,
        body_limit=settings.body_size_ceiling,
        parameter_limit=settings.form_parameter_limit,
        verify=body_verifier,
    )

    app.add_middleware(ErrorHandlingMiddleware, chain=chain)

    app.add_middleware(RequestLoggingMiddleware, exempt_paths=exempt_paths)

    app.add_middleware(
        OriginPolicyMiddleware,
        policy=OriginPolicy.parse(settings.frontend_url),
        exempt_paths=exempt_paths,
    )

    app.add_middleware(CacheControlMiddleware)

    app.add_middleware(SecurityHeadersMiddleware, hsts_max_age=settings.hsts_max_age)

    app.add_middleware(TraceContextMiddleware, telemetry=telemetry)

    app.add_middleware(ContentTypeOverrideMiddleware)

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app, chain)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(build_health_router(settings.health_path))
    app.include_router(callbacks.router, prefix=settings.api_prefix)
    for router in routers:
        app.include_router(router, prefix=settings.api_prefix)

    logger.info("Routes loaded")
    return app


# ── Application Instance ─────────────────────────────────────────────────
# uvicorn expects `courier.main:app` to be importable
telemetry = Telemetry.from_settings(default_settings)
app = create_app(
    default_settings,
    telemetry,
    lifespan=build_lifespan(default_settings, telemetry),
)
