from contextlib import asynccontextmanager
import logging
import uuid

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from nhs_interop.api import audit, compliance, connections, health, patients, transfers
from nhs_interop.api.deps import require_api_key
from nhs_interop.config import settings
from nhs_interop.exceptions import (
    AuditWriteFailure,
    IntegrationError,
    InvalidIdentifier,
    MappingError,
    NotFound,
    RateLimited,
    RejectedError,
    RetryableAuthError,
    SubmissionRejected,
    TerminalAuthError,
    TransientNetworkError,
)
from nhs_interop.logging import configure_logging, correlation_id_var
from nhs_interop.services.container import IntegrationServices, build_sql_services

configure_logging()
logger = logging.getLogger("nhs_interop")

# Most specific first; the first isinstance match wins.
ERROR_STATUS: list[tuple[type[IntegrationError], int]] = [
    (InvalidIdentifier, 400),
    (TerminalAuthError, 409),
    (RetryableAuthError, 503),
    (NotFound, 404),
    (SubmissionRejected, 422),
    (RejectedError, 422),
    (MappingError, 502),
    (RateLimited, 429),
    (TransientNetworkError, 502),
    (AuditWriteFailure, 503),
]


def status_for(exc: IntegrationError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 409


def _error_type(exc: Exception) -> str:
    name = type(exc).__name__
    return "".join(f"_{char.lower()}" if char.isupper() else char for char in name).lstrip("_")


def create_app(services: IntegrationServices | None = None) -> FastAPI:
    """Build the API; pre-built ``services`` skip database start-up."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting %s", settings.app_name)
        owns_database = services is None
        if owns_database:
            from nhs_interop.database import async_session_maker, close_db, init_db

            try:
                await init_db()
                logger.info("Database initialized")
            except Exception:
                logger.exception("Failed to initialize database")
                raise
            app.state.services = build_sql_services(settings, async_session_maker)
        else:
            app.state.services = services

        await app.state.services.scheduler.start()

        yield

        logger.info("Shutting down %s", settings.app_name)
        try:
            await app.state.services.close()
        except Exception:
            logger.exception("Error closing integration services")
        if owns_database:
            try:
                await close_db()
                logger.info("Database connections closed")
            except Exception:
                logger.exception("Error closing database")
        logger.info("%s shutdown complete", settings.app_name)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="""
        # NHS Interop Core

        Integration layer between a care-home platform and the national
        health-data exchange.

        ## Features

        - **Connections** - OAuth2 client-credential tokens per organization
        - **Reconciliation** - FHIR R4 patient records merged by field ownership
        - **Medication transfers** - At-most-once delivery per idempotency key
        - **Compliance** - Periodic batches with per-item outcomes
        - **Audit** - Hash-chained, append-only trail of every exchange
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
        correlation_id_var.set(correlation_id)
        response = await call_next(request)
        response.headers.setdefault("X-Correlation-ID", correlation_id)
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault(
            "Content-Security-Policy",
            "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
        )
        if not settings.debug:
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=63072000; includeSubDomains; preload",
            )
        return response

    app.include_router(health.router)
    for router in (
        connections.router,
        patients.router,
        transfers.router,
        compliance.router,
        audit.router,
    ):
        app.include_router(
            router,
            prefix=settings.api_prefix,
            dependencies=[Depends(require_api_key)],
        )

    @app.exception_handler(IntegrationError)
    async def integration_exception_handler(_request: Request, exc: IntegrationError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("Integration failure: %s", exc.context())
        headers = {}
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            headers["Retry-After"] = str(int(exc.retry_after))
        return JSONResponse(
            status_code=status_code,
            headers=headers or None,
            content={
                "error": {
                    "message": exc.message,
                    "status_code": status_code,
                    "type": _error_type(exc),
                    "context": exc.context(),
                    "correlation_id": correlation_id_var.get(),
                }
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "message": exc.detail,
                    "status_code": exc.status_code,
                    "type": "http_error",
                    "correlation_id": correlation_id_var.get(),
                }
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "message": "Validation error",
                    "status_code": 422,
                    "type": "validation_error",
                    "details": jsonable_errors(exc),
                    "correlation_id": correlation_id_var.get(),
                }
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, _exc: Exception):
        logger.exception("Unhandled error")
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "message": "Internal server error",
                    "status_code": 500,
                    "type": "server_error",
                    "correlation_id": correlation_id_var.get(),
                }
            },
        )

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    errors = []
    for error in exc.errors():
        item = {key: value for key, value in error.items() if key in ("loc", "msg", "type")}
        errors.append(item)
    return errors


app = create_app()
