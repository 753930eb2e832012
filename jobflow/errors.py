from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class InvalidTransition(ApiError):
    def __init__(self, *, current_status: str, action: str, message: str | None = None) -> None:
        super().__init__(
            code="JOB_TRANSITION_INVALID",
            message=message or f"cannot {action} a job in status {current_status}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
            details={"current_status": current_status, "action": action},
        )
        self.current_status = current_status
        self.action = action


class ValidationError(ApiError):
    def __init__(self, message: str, *, code: str = "REQ_VALIDATION_FAILED", field: str | None = None) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
            details={"field": field} if field else None,
        )
        self.field = field


class TransportError(ApiError):
    def __init__(self, message: str, *, code: str = "TRANSPORT_UNAVAILABLE", http_status: int = 503) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="transport",
            retryable=True,
            http_status=http_status,
        )


class StaleStateError(ApiError):
    """The caller's view of a job no longer matches the server's."""

    def __init__(
        self,
        *,
        job_id: str,
        expected_status: str | None,
        actual_status: str | None,
        latest: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            code="JOB_STATE_STALE",
            message=f"job {job_id} is {actual_status}, not {expected_status}",
            error_class="conflict",
            retryable=False,
            http_status=409,
            details={"job_id": job_id, "expected_status": expected_status, "actual_status": actual_status},
        )
        self.job_id = job_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        self.latest = latest


def not_found(code: str, message: str) -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def forbidden(message: str) -> ApiError:
    return ApiError(
        code="ACTOR_FORBIDDEN",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=403,
    )


def error_from_envelope(body: dict[str, Any], *, http_status: int) -> ApiError:
    """Rebuild the typed error a server response describes."""
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        if http_status >= 500:
            return TransportError(f"server error {http_status}", http_status=http_status)
        return ApiError(
            code="REQ_HTTP_ERROR",
            message=f"unexpected response {http_status}",
            error_class="validation",
            retryable=False,
            http_status=http_status,
        )
    code = str(error.get("code", ""))
    message = str(error.get("message", ""))
    details = error.get("details") if isinstance(error.get("details"), dict) else {}
    if code == "JOB_TRANSITION_INVALID":
        return InvalidTransition(
            current_status=str(details.get("current_status", "")),
            action=str(details.get("action", "")),
            message=message,
        )
    if code == "JOB_STATE_STALE":
        latest = details.get("latest")
        return StaleStateError(
            job_id=str(details.get("job_id", "")),
            expected_status=details.get("expected_status"),
            actual_status=details.get("actual_status"),
            latest=latest if isinstance(latest, dict) else None,
        )
    if error.get("class") == "validation" and http_status == 400:
        return ValidationError(message, code=code, field=details.get("field"))
    if error.get("class") == "transport" or http_status >= 500:
        return TransportError(
            message or f"server error {http_status}",
            code=code or "TRANSPORT_UNAVAILABLE",
            http_status=http_status,
        )
    return ApiError(
        code=code,
        message=message,
        error_class=str(error.get("class", "validation")),
        retryable=bool(error.get("retryable", False)),
        http_status=http_status,
        details=details or None,
    )
