from __future__ import annotations

from fastapi import APIRouter, Query, Request

from jobflow.routes._deps import auth_from_request, trace_id_from_request
from jobflow.schemas import success_envelope
from jobflow.store import store

router = APIRouter(prefix="/api/v1", tags=["notifications"])


@router.get("/notifications")
def get_notifications(
    request: Request,
    read: bool | None = Query(default=None),
    type: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    skip: int = Query(default=0, ge=0),
):
    user_id = auth_from_request(request).user_id
    items = store.get_notifications(user_id=user_id, read=read, type=type, limit=limit, skip=skip)
    data = {
        "items": items,
        "unread_count": store.unread_count(user_id=user_id),
        "limit": limit,
        "skip": skip,
    }
    return success_envelope(data, trace_id_from_request(request))


@router.get("/notifications/unread-count")
def get_unread_count(request: Request):
    user_id = auth_from_request(request).user_id
    return success_envelope({"unread_count": store.unread_count(user_id=user_id)}, trace_id_from_request(request))


@router.patch("/notifications/read-all")
def mark_all_read(request: Request):
    user_id = auth_from_request(request).user_id
    return success_envelope(store.mark_all_notifications_read(user_id=user_id), trace_id_from_request(request))


@router.delete("/notifications/read")
def delete_all_read(request: Request):
    user_id = auth_from_request(request).user_id
    return success_envelope(store.delete_all_read_notifications(user_id=user_id), trace_id_from_request(request))


@router.patch("/notifications/{notification_id}/read")
def mark_read(notification_id: str, request: Request):
    user_id = auth_from_request(request).user_id
    data = store.mark_notification_read(user_id=user_id, notification_id=notification_id)
    return success_envelope(data, trace_id_from_request(request))


@router.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, request: Request):
    user_id = auth_from_request(request).user_id
    data = store.delete_notification(user_id=user_id, notification_id=notification_id)
    return success_envelope(data, trace_id_from_request(request))
