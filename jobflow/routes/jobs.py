from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from jobflow.routes._deps import auth_from_request, run_with_idempotency, trace_id_from_request
from jobflow.schemas import ApplyRequest, CreateJobRequest, JobTransitionRequest, success_envelope
from jobflow.store import store

router = APIRouter(prefix="/api/v1", tags=["jobs"])


@router.post("/jobs")
def create_job(
    payload: CreateJobRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = auth_from_request(request).as_actor()
    body = payload.model_dump()
    data = run_with_idempotency(
        request,
        endpoint="POST:/api/v1/jobs",
        idempotency_key=idempotency_key,
        payload=body,
        execute=lambda: store.create_job(actor=actor, payload=body),
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/jobs")
def list_jobs(request: Request, status: str | None = Query(default=None)):
    actor = auth_from_request(request).as_actor()
    return success_envelope(store.list_jobs(actor=actor, status=status), trace_id_from_request(request))


@router.get("/jobs/{job_id}")
def get_job(job_id: str, request: Request):
    actor = auth_from_request(request).as_actor()
    return success_envelope(store.get_job(job_id=job_id, actor=actor), trace_id_from_request(request))


@router.post("/jobs/{job_id}/transitions")
def transition_job(
    job_id: str,
    payload: JobTransitionRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = auth_from_request(request).as_actor()
    body = payload.model_dump()
    data = run_with_idempotency(
        request,
        endpoint=f"POST:/api/v1/jobs/{job_id}/transitions",
        idempotency_key=idempotency_key,
        payload=body,
        execute=lambda: store.transition_job(
            job_id=job_id,
            action=payload.action,
            actor=actor,
            payload=payload.payload,
            expected_status=payload.expected_status,
        ),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/jobs/{job_id}/submission")
def get_submission(job_id: str, request: Request):
    actor = auth_from_request(request).as_actor()
    return success_envelope(store.get_submission(job_id=job_id, actor=actor), trace_id_from_request(request))


@router.post("/jobs/{job_id}/applications")
def apply_to_job(
    job_id: str,
    payload: ApplyRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = auth_from_request(request).as_actor()
    body = payload.model_dump()
    data = run_with_idempotency(
        request,
        endpoint=f"POST:/api/v1/jobs/{job_id}/applications",
        idempotency_key=idempotency_key,
        payload=body,
        execute=lambda: store.apply_to_job(job_id=job_id, actor=actor, payload=body),
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/jobs/{job_id}/applications")
def list_applications(job_id: str, request: Request):
    actor = auth_from_request(request).as_actor()
    return success_envelope(store.list_applications(job_id=job_id, actor=actor), trace_id_from_request(request))


@router.get("/applications")
def list_my_applications(request: Request):
    actor = auth_from_request(request).as_actor()
    return success_envelope(store.list_my_applications(actor=actor), trace_id_from_request(request))
