"""Worker applications to posted jobs.

A worker applies once per job. Assigning the job accepts one pending
application and rejects the rest; that part is staged here and committed by
the lifecycle engine together with the job row.
"""
from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from jobflow.errors import ApiError, ValidationError, not_found
from jobflow.ledger import normalize_files
from jobflow.models import ApplicationStatus, JobStatus, NotificationAction, NotificationType
from jobflow.notifications import NotificationService
from jobflow.outbox import DomainOutbox
from jobflow.repositories.applications import InMemoryApplicationsRepository

logger = logging.getLogger(__name__)

MIN_PROPOSAL_LENGTH = 50


class ApplicationService:
    def __init__(
        self,
        repository: InMemoryApplicationsRepository,
        *,
        notifications: NotificationService,
        outbox: DomainOutbox,
        min_proposal_length: int = MIN_PROPOSAL_LENGTH,
    ) -> None:
        self.repository = repository
        self.notifications = notifications
        self.outbox = outbox
        self.min_proposal_length = max(1, int(min_proposal_length))

    @staticmethod
    def _utcnow() -> datetime:
        return datetime.now(UTC)

    def _validate(self, payload: dict[str, Any]) -> dict[str, Any]:
        proposal = str(payload.get("proposal") or "").strip()
        if len(proposal) < self.min_proposal_length:
            raise ValidationError(
                f"proposal must be at least {self.min_proposal_length} characters",
                code="APPLICATION_PROPOSAL_TOO_SHORT",
                field="proposal",
            )
        rate = payload.get("proposed_rate")
        if rate is not None:
            try:
                rate = float(rate)
            except (TypeError, ValueError):
                raise ValidationError("proposed_rate must be a number", field="proposed_rate") from None
            if rate < 0:
                raise ValidationError("proposed_rate must not be negative", field="proposed_rate")
        return {
            "proposal": proposal,
            "proposed_rate": rate,
            "cover_letter": str(payload.get("cover_letter") or "").strip(),
            "estimated_duration": str(payload.get("estimated_duration") or "").strip() or None,
            "attachments": normalize_files(payload.get("attachments"), field="attachments"),
        }

    def apply(self, job: dict[str, Any], *, worker_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        job_id = str(job["job_id"])
        if job.get("status") != JobStatus.POSTED:
            raise ApiError(
                code="JOB_NOT_ACCEPTING_APPLICATIONS",
                message="this job is no longer accepting applications",
                error_class="business_rule",
                retryable=False,
                http_status=409,
                details={"job_id": job_id, "status": job.get("status")},
            )
        if self.repository.find(job_id=job_id, worker_id=worker_id) is not None:
            raise ApiError(
                code="APPLICATION_DUPLICATE",
                message="you have already applied for this job",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        fields = self._validate(payload)
        now = self._utcnow()
        application = {
            "application_id": f"app_{uuid.uuid4().hex[:12]}",
            "job_id": job_id,
            "worker_id": worker_id,
            **fields,
            "status": ApplicationStatus.PENDING,
            "responded_at": None,
            "created_at": now.isoformat(),
        }
        notification = self.notifications.prepare(
            user_id=str(job["company_id"]),
            type=NotificationType.APPLICATION,
            title="New job application",
            message=f"You received a new application for {job.get('title') or 'your job'}",
            link=f"/jobs/{job_id}/applications",
            metadata={
                "job_id": job_id,
                "action": NotificationAction.APPLIED,
                "application_id": application["application_id"],
                "worker_id": worker_id,
            },
            now=now,
        )
        saved = self.repository.create(application=application)
        self.notifications.commit(notification)
        self.outbox.append(
            self.outbox.build_event(
                event_type="application.create",
                aggregate_type="job",
                aggregate_id=job_id,
                deliveries=[self.notifications.delivery_for(notification)],
            )
        )
        logger.info("application_created application_id=%s job_id=%s", application["application_id"], job_id)
        return public_application(saved)

    def stage_assignment(
        self,
        job: dict[str, Any],
        *,
        application_id: str,
        now: datetime,
    ) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        """Return the accepted application and the rejected rest, none of them saved yet."""
        job_id = str(job["job_id"])
        chosen = self.repository.get(application_id=application_id)
        if chosen is None or chosen.get("job_id") != job_id:
            raise not_found("APPLICATION_NOT_FOUND", "application not found for this job")
        if chosen.get("status") != ApplicationStatus.PENDING:
            raise ApiError(
                code="APPLICATION_NOT_PENDING",
                message=f"application is {chosen.get('status')}",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        responded_at = now.isoformat()
        accepted = {**chosen, "status": ApplicationStatus.ACCEPTED, "responded_at": responded_at}
        rejected = [
            {**row, "status": ApplicationStatus.REJECTED, "responded_at": responded_at}
            for row in self.repository.list_for_job(job_id=job_id)
            if row["application_id"] != application_id and row.get("status") == ApplicationStatus.PENDING
        ]
        return accepted, rejected

    def rejection_notice(self, job: dict[str, Any], application: dict[str, Any], *, now: datetime) -> dict[str, Any]:
        job_id = str(job["job_id"])
        return self.notifications.prepare(
            user_id=str(application["worker_id"]),
            type=NotificationType.APPLICATION,
            title="Application not selected",
            message=f"Another worker was chosen for {job.get('title') or 'the job'}",
            link=f"/jobs/{job_id}",
            metadata={
                "job_id": job_id,
                "action": NotificationAction.APPLICATION_REJECTED,
                "application_id": application["application_id"],
            },
            now=now,
        )

    def save(self, application: dict[str, Any]) -> dict[str, Any]:
        return self.repository.save(application=application)

    def list_for_job(self, *, job_id: str, worker_id: str | None = None) -> list[dict[str, Any]]:
        rows = self.repository.list_for_job(job_id=job_id)
        if worker_id is not None:
            rows = [x for x in rows if x.get("worker_id") == worker_id]
        return [public_application(x) for x in rows]

    def list_for_worker(self, *, worker_id: str) -> list[dict[str, Any]]:
        return [public_application(x) for x in self.repository.list_for_worker(worker_id=worker_id)]


def public_application(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row.get("application_id"),
        "job_id": row.get("job_id"),
        "worker_id": row.get("worker_id"),
        "proposal": row.get("proposal"),
        "proposed_rate": row.get("proposed_rate"),
        "cover_letter": row.get("cover_letter"),
        "estimated_duration": row.get("estimated_duration"),
        "attachments": list(row.get("attachments") or []),
        "status": row.get("status"),
        "responded_at": row.get("responded_at"),
        "created_at": row.get("created_at"),
    }
