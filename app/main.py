import logging
import os
import sys
import time
import uuid
from typing import Callable, Iterable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_UPSTREAM,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from app.api.routes_cron import router as cron_router
from app.api.routes_health import router as health_router
from app.api.routes_meetings import router as meetings_router
from app.api.routes_metrics import router as metrics_router
from app.api.routes_payments import router as payments_router
from app.domain.errors import DomainError
from app.infra.calendar import GoogleCalendarService
from app.infra.db import get_session_factory
from app.infra.email import resolve_email_adapter
from app.infra.logging import configure_logging
from app.infra.metrics import configure_metrics
from app.infra.security import create_rate_limiter
from app.settings import settings

logger = logging.getLogger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("app.request")
        start = time.time()
        response = await call_next(request)
        latency_ms = int((time.time() - start) * 1000)
        if response.status_code >= 500:
            route = request.scope.get("route")
            request.app.state.metrics.record_http_5xx(request.method, getattr(route, "path", "unmatched"))
        request_logger.info(
            "request",
            extra={
                "extra": {
                    "request_id": getattr(request.state, "request_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_ms": latency_ms,
                }
            },
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response


def _resolve_cors_origins(app_settings) -> Iterable[str]:
    if app_settings.cors_origins:
        return app_settings.cors_origins
    if app_settings.strict_cors:
        return []
    if app_settings.app_env == "dev":
        return ["http://localhost:3000"]
    return []


def _validate_prod_config(app_settings) -> None:
    if (
        app_settings.app_env == "dev"
        or getattr(app_settings, "testing", False)
        or os.getenv("PYTEST_CURRENT_TEST")
        or "pytest" in sys.argv[0]
    ):
        return

    errors: list[str] = []
    if not app_settings.cron_secret:
        errors.append("CRON_SECRET is required outside dev")
    if not app_settings.stripe_webhook_secret:
        errors.append("STRIPE_WEBHOOK_SECRET is required outside dev")

    if errors:
        for error in errors:
            logger.error("startup_config_error", extra={"extra": {"detail": error}})
        raise RuntimeError("Invalid production configuration; see logs for details")


def create_app(app_settings) -> FastAPI:
    configure_logging()
    _validate_prod_config(app_settings)
    app = FastAPI(title="Expert Booking Settlement", version="1.0.0")

    rate_limiter = create_rate_limiter(app_settings)
    app.state.rate_limiter = rate_limiter
    app.state.app_settings = app_settings
    app.state.db_session_factory = get_session_factory()
    app.state.metrics = configure_metrics(app_settings.metrics_enabled)
    app.state.email_adapter = resolve_email_adapter(app_settings)
    app.state.calendar_service = GoogleCalendarService(app_settings)
    app.state.stripe_client = None

    @app.on_event("shutdown")
    async def shutdown_limiter() -> None:
        await rate_limiter.close()

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(_resolve_cors_origins(app_settings)),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        if exc.status_code >= 500:
            default_type = PROBLEM_TYPE_UPSTREAM if exc.status_code == 502 else PROBLEM_TYPE_SERVER
        else:
            default_type = PROBLEM_TYPE_DOMAIN
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or default_type,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            extra={
                "extra": {
                    "request_id": getattr(request.state, "request_id", None),
                    "path": request.url.path,
                }
            },
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(payments_router)
    app.include_router(meetings_router)
    app.include_router(cron_router)
    return app


app = create_app(settings)
