"""FastAPI application factories for the hub and the comparator.

Both apps share the error handling, rate limiting, metrics and request
logging installed by ``_install_common``. A pre-built service may be
handed to a factory (tests do this); otherwise the lifespan connects the
database and starts one.
"""

from __future__ import annotations

import logging
import time
import warnings
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

# slowapi still calls asyncio.iscoroutinefunction, deprecated since Python 3.14
warnings.filterwarnings(
    "ignore",
    message=r".*asyncio\.iscoroutinefunction.*",
    category=DeprecationWarning,
    module=r"slowapi\..*",
)
from slowapi import Limiter  # noqa: E402
from slowapi.errors import RateLimitExceeded  # noqa: E402
from slowapi.middleware import SlowAPIMiddleware  # noqa: E402
from slowapi.util import get_remote_address  # noqa: E402

import hubstore  # noqa: E402
from hubstore.api.metrics import RequestMetrics, metrics_endpoint  # noqa: E402
from hubstore.api.routes import comparator as comparator_routes  # noqa: E402
from hubstore.api.routes import hub as hub_routes  # noqa: E402
from hubstore.comparator.service import ComparatorService  # noqa: E402
from hubstore.config import ComparatorSettings, Settings  # noqa: E402
from hubstore.core.service import HubService  # noqa: E402
from hubstore.exceptions import AuthorizationError, HubstoreError  # noqa: E402
from hubstore.logging_config import log_startup_info, setup_logging  # noqa: E402
from hubstore.storage.database import Database  # noqa: E402

logger = logging.getLogger("hubstore.api")
_audit_logger = logging.getLogger("hubstore.audit")


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------
async def hubstore_error_handler(request: Request, exc: HubstoreError) -> JSONResponse:
    """Centralized handler for hubstore exceptions.

    Authorization failures answer with a generic message; the specific
    cause goes to the audit log only.
    """
    request_id = getattr(request.state, "request_id", "unknown")
    message = exc.message
    if isinstance(exc, AuthorizationError):
        _audit_logger.warning(
            "Authorization denied: %s %s: %s (%s)",
            request.method,
            request.url.path,
            exc.message,
            type(exc).__name__,
            extra={
                "event_category": "audit",
                "action": "authorization_denied",
                "request_id": request_id,
            },
        )
        message = exc.public_message
    elif exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s",
            request.method,
            request.url.path,
            exc.message,
            exc_info=exc,
            extra={"request_id": request_id},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_type,
            "message": message,
            "request_id": request_id,
        },
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are plain 400s."""
    request_id = getattr(request.state, "request_id", "unknown")
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
    return JSONResponse(
        status_code=400,
        content={
            "error": "bad_request",
            "message": f"bad request: invalid {fields}" if fields else "bad request",
            "request_id": request_id,
        },
    )


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    # SlowAPIMiddleware calls this synchronously.
    request_id = getattr(request.state, "request_id", "unknown")
    _audit_logger.warning(
        "Rate limit exceeded: %s %s from %s",
        request.method,
        request.url.path,
        get_remote_address(request),
        extra={
            "event_category": "audit",
            "action": "rate_limit_exceeded",
            "request_id": request_id,
        },
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": f"rate limit exceeded: {exc.detail}",
            "request_id": request_id,
        },
        headers={"Retry-After": "60"},
    )


# ---------------------------------------------------------------------------
# Request logging middleware (also sets request_id on state for error handler)
# ---------------------------------------------------------------------------
async def request_logging_middleware(request: Request, call_next) -> Response:
    request_id = str(uuid4())[:8]
    request.state.request_id = request_id
    start = time.monotonic()
    response: Response = await call_next(request)
    elapsed = time.monotonic() - start
    elapsed_ms = round(elapsed * 1000, 1)
    request.app.state.metrics.observe(request, response.status_code, elapsed)
    logger.info(
        "%s %s %s %.1fms [%s]",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request_id,
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "status_code": response.status_code,
            "duration_ms": elapsed_ms,
        },
    )
    response.headers["X-Request-ID"] = request_id
    return response


async def security_headers_middleware(request: Request, call_next) -> Response:
    response: Response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Cache-Control"] = "no-store"
    return response


def _install_common(
    app: FastAPI,
    namespace: str,
    rate_limit: str,
    cors_origins: list[str] | None = None,
) -> None:
    """Error handlers, rate limiting, metrics and the middleware stack."""
    app.add_exception_handler(HubstoreError, hubstore_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    enabled = rate_limit.lower() != "none"
    app.state.limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[rate_limit] if enabled else [],
        enabled=enabled,
    )
    app.add_middleware(SlowAPIMiddleware)

    app.state.metrics = RequestMetrics(namespace)
    app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], include_in_schema=False)

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["Location", "X-Request-ID"],
        )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.middleware("http")(security_headers_middleware)
    app.middleware("http")(request_logging_middleware)


# ---------------------------------------------------------------------------
# Hub
# ---------------------------------------------------------------------------
def create_hub_app(settings: Settings | None = None, service: HubService | None = None) -> FastAPI:
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(settings.log_format, settings.log_level)
        owned = app.state.service is None
        if owned:
            db = Database(settings.db_path)
            await db.connect()
            app.state.service = HubService(settings, db)
            await app.state.service.start()
        log_startup_info("hub", app.state.service.identity.did, settings.base_url)
        yield
        if owned:
            logger.info("Closing database connection")
            await app.state.service.db.close()
            app.state.service = None

    app = FastAPI(
        title="hubstore confidential storage hub",
        description="Compare and extract encrypted documents under delegated capabilities.",
        version=hubstore.__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service
    _install_common(app, "hubstore_hub", settings.rate_limit, settings.cors_origin_list)
    app.include_router(hub_routes.router)
    return app


# ---------------------------------------------------------------------------
# Comparator
# ---------------------------------------------------------------------------
def create_comparator_app(
    settings: ComparatorSettings | None = None, service: ComparatorService | None = None
) -> FastAPI:
    settings = settings or ComparatorSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(settings.log_format, settings.log_level)
        owned = app.state.service is None
        if owned:
            db = Database(settings.db_path)
            await db.connect()
            app.state.service = ComparatorService(settings, db)
            await app.state.service.start()
        log_startup_info("comparator", app.state.service.get_config().did)
        yield
        if owned:
            await app.state.service.close()
            await app.state.service.db.close()
            app.state.service = None

    app = FastAPI(
        title="hubstore comparator",
        description="Delegates vault document queries to third parties through the hub.",
        version=hubstore.__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service
    _install_common(app, "hubstore_comparator", settings.rate_limit)
    app.include_router(comparator_routes.router)
    return app
