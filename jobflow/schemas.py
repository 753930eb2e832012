from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class CreateJobRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    deadline: str | None = None


class JobTransitionRequest(BaseModel):
    action: Literal["assign", "start", "submit", "approve", "request_revision"]
    expected_status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class ApplyRequest(BaseModel):
    proposal: str = ""
    proposed_rate: float | None = None
    cover_letter: str = ""
    estimated_duration: str | None = None
    attachments: list[dict[str, Any]] = Field(default_factory=list)


class CreateConversationRequest(BaseModel):
    other_user_id: str = Field(min_length=1)
    job_id: str | None = None


class SendMessageRequest(BaseModel):
    content: str = ""
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    client_temp_id: str | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
