from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from jobflow.errors import ApiError, StaleStateError
from jobflow.routes import jobs, messages, notifications, realtime
from jobflow.routes._deps import error_response, trace_id_from_request
from jobflow.schemas import success_envelope
from jobflow.security import JwtSecurityConfig, resolve_auth_context

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {"/healthz", "/api/v1/health"}


def _error_details(exc: ApiError) -> dict[str, object] | None:
    if isinstance(exc, StaleStateError) and exc.latest is not None:
        return {**(exc.details or {}), "latest": exc.latest}
    return exc.details


def create_app() -> FastAPI:
    app = FastAPI(title="Jobflow Marketplace API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_and_auth(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.auth = None
        path = request.url.path
        try:
            if path.startswith("/api/v1/") and path not in _PUBLIC_PATHS and request.method != "OPTIONS":
                request.state.auth = resolve_auth_context(
                    cfg=security_cfg,
                    authorization=request.headers.get("Authorization"),
                    user_id=request.headers.get("x-user-id"),
                    role=request.headers.get("x-user-role"),
                )
            response = await call_next(request)
        except ApiError as exc:
            logger.warning("request_rejected path=%s code=%s", path, exc.code)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.http_status >= 500:
            logger.warning("api_error code=%s message=%s", exc.code, exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=_error_details(exc),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        fields = [".".join(str(x) for x in err.get("loc", ()) if x != "body") for err in exc.errors()]
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
            details={"field": fields[0]} if fields and fields[0] else None,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(jobs.router)
    app.include_router(notifications.router)
    app.include_router(messages.router)
    app.include_router(realtime.router)
    return app


app = create_app()
