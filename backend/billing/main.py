import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from billing.api.problem_details import PROBLEM_TYPE_SERVER, domain_problem, problem_response
from billing.api.routes_admin_billing import router as admin_billing_router
from billing.api.routes_health import router as health_router
from billing.api.routes_payments import router as payments_router
from billing.domain.errors import DomainError
from billing.infra.db import dispose_engine, get_session_factory
from billing.infra.logging import clear_log_context, configure_logging, update_log_context
from billing.infra.metrics import Metrics, configure_metrics
from billing.infra.stripe_client import build_stripe_client
from billing.settings import Settings, settings

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("billing.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Request id, per-request log context, access log line and HTTP metrics."""

    def __init__(self, app: FastAPI, metrics_client: Metrics) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            elapsed = time.perf_counter() - started
            route_path = getattr(request.scope.get("route"), "path", "unmatched")
            self.metrics.record_http_latency(request.method, route_path, status_code, elapsed)
            if status_code >= 500:
                self.metrics.record_http_5xx(request.method, route_path)
            update_log_context(status_code=status_code, latency_ms=int(elapsed * 1000))
            request_logger.info("request")
            clear_log_context()
        response.headers.setdefault("X-Request-ID", request_id)
        return response


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path"})
                or "body",
                "message": error.get("msg", "Invalid value"),
            }
            for error in exc.errors()
        ]
        return problem_response(
            request, 422, "Request validation failed", title="Validation Error", errors=errors
        )

    @app.exception_handler(DomainError)
    async def on_domain_error(request: Request, exc: DomainError):
        logger.info(
            "domain_error",
            extra={"extra": {"error_type": type(exc).__name__, "status_code": exc.status_code}},
        )
        return domain_problem(request, exc)

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return problem_response(request, exc.status_code, message, title=message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def on_unhandled_error(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            extra={"extra": {"path": request.url.path, "error_type": type(exc).__name__}},
        )
        return problem_response(
            request, 500, "Unexpected error", title="Internal Server Error", type_=PROBLEM_TYPE_SERVER
        )


def create_app(app_settings: Settings) -> FastAPI:
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Anything already installed on the state (tests, embedding apps) wins.
        state = app.state
        state.app_settings = getattr(state, "app_settings", None) or app_settings
        state.metrics = getattr(state, "metrics", None) or metrics_client
        state.db_session_factory = getattr(state, "db_session_factory", None) or get_session_factory()
        state.stripe_client = getattr(state, "stripe_client", None) or build_stripe_client(app_settings)
        yield
        await dispose_engine()

    app = FastAPI(title="Membership Billing", version="1.0.0", lifespan=lifespan)
    app.add_middleware(RequestContextMiddleware, metrics_client=metrics_client)
    _register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(payments_router)
    app.include_router(admin_billing_router)
    if app_settings.metrics_enabled:
        from billing.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
