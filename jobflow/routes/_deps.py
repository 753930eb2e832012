from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from jobflow.errors import ApiError
from jobflow.schemas import error_envelope
from jobflow.security import AuthContext
from jobflow.store import store


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def auth_from_request(request: Request) -> AuthContext:
    auth = getattr(request.state, "auth", None)
    if auth is None:
        raise ApiError(
            code="AUTH_UNAUTHORIZED",
            message="authentication required",
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )
    return auth


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )


def run_with_idempotency(
    request: Request,
    *,
    endpoint: str,
    idempotency_key: str | None,
    payload: dict[str, Any],
    execute: Callable[[], Any],
) -> Any:
    if not idempotency_key:
        return execute()
    return store.run_idempotent(
        endpoint=endpoint,
        user_id=auth_from_request(request).user_id,
        idempotency_key=idempotency_key,
        payload=payload,
        execute=execute,
    )
