from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from jobflow.routes._deps import auth_from_request, run_with_idempotency, trace_id_from_request
from jobflow.schemas import CreateConversationRequest, SendMessageRequest, success_envelope
from jobflow.store import store

router = APIRouter(prefix="/api/v1", tags=["messages"])


@router.post("/conversations")
def create_conversation(payload: CreateConversationRequest, request: Request):
    user_id = auth_from_request(request).user_id
    data = store.get_or_create_conversation(
        user_id=user_id,
        other_user_id=payload.other_user_id,
        job_id=payload.job_id,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/conversations")
def list_conversations(request: Request):
    user_id = auth_from_request(request).user_id
    return success_envelope(store.list_conversations(user_id=user_id), trace_id_from_request(request))


@router.get("/conversations/{conversation_id}/messages")
def get_messages(
    conversation_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    before: int | None = Query(default=None, ge=1),
):
    user_id = auth_from_request(request).user_id
    data = store.get_messages(conversation_id=conversation_id, user_id=user_id, limit=limit, before=before)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/conversations/{conversation_id}/messages")
def send_message(
    conversation_id: str,
    payload: SendMessageRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    user_id = auth_from_request(request).user_id
    body = payload.model_dump()
    data = run_with_idempotency(
        request,
        endpoint=f"POST:/api/v1/conversations/{conversation_id}/messages",
        idempotency_key=idempotency_key,
        payload=body,
        execute=lambda: store.send_message(
            conversation_id=conversation_id,
            sender_id=user_id,
            content=payload.content,
            attachments=payload.attachments,
            client_temp_id=payload.client_temp_id,
        ),
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.patch("/conversations/{conversation_id}/read")
def mark_conversation_read(conversation_id: str, request: Request):
    user_id = auth_from_request(request).user_id
    data = store.mark_conversation_read(conversation_id=conversation_id, user_id=user_id)
    return success_envelope(data, trace_id_from_request(request))
