"""Authoritative job state machine.

``transition`` validates and stages every write for an action (job row,
application decisions, ledger record, review stamp, notifications, outbox
event) before committing any of them, so a rejected action leaves nothing
behind and an accepted one never lands without its notification.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from jobflow.applications import ApplicationService
from jobflow.errors import ApiError, InvalidTransition, StaleStateError, ValidationError, forbidden, not_found
from jobflow.ledger import SubmissionLedger
from jobflow.models import JobAction, JobStatus, NotificationAction, NotificationType, Role, SubmissionStatus
from jobflow.notifications import NotificationService
from jobflow.outbox import DomainOutbox
from jobflow.repositories.jobs import InMemoryJobsRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionRule:
    from_statuses: frozenset[str]
    to_status: str
    role: str


TRANSITION_RULES: dict[str, TransitionRule] = {
    JobAction.ASSIGN: TransitionRule(frozenset({JobStatus.POSTED}), JobStatus.ASSIGNED, Role.COMPANY),
    JobAction.START: TransitionRule(frozenset({JobStatus.ASSIGNED}), JobStatus.IN_PROGRESS, Role.WORKER),
    JobAction.SUBMIT: TransitionRule(
        frozenset({JobStatus.IN_PROGRESS, JobStatus.REVISION_REQUESTED}),
        JobStatus.SUBMITTED,
        Role.WORKER,
    ),
    JobAction.APPROVE: TransitionRule(frozenset({JobStatus.SUBMITTED}), JobStatus.COMPLETED, Role.COMPANY),
    JobAction.REQUEST_REVISION: TransitionRule(
        frozenset({JobStatus.SUBMITTED}),
        JobStatus.REVISION_REQUESTED,
        Role.COMPANY,
    ),
}

# Derived from the rules; cancelled is terminal and no action produces it.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {status: set() for status in JobStatus.ALL}
for _rule in TRANSITION_RULES.values():
    for _source in _rule.from_statuses:
        ALLOWED_TRANSITIONS[_source].add(_rule.to_status)


@dataclass
class StagedTransition:
    job: dict[str, Any]
    submission: dict[str, Any] | None = None
    revision: dict[str, Any] | None = None
    review_status: str | None = None
    notification: dict[str, Any] | None = None
    extra_notifications: list[dict[str, Any]] = field(default_factory=list)
    applications: list[dict[str, Any]] = field(default_factory=list)


def _fingerprint(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


class JobLifecycleEngine:
    def __init__(
        self,
        *,
        jobs_repository: InMemoryJobsRepository,
        ledger: SubmissionLedger,
        notifications: NotificationService,
        applications: ApplicationService,
        outbox: DomainOutbox,
        lock: threading.RLock | None = None,
    ) -> None:
        self.jobs_repository = jobs_repository
        self.ledger = ledger
        self.notifications = notifications
        self.applications = applications
        self.outbox = outbox
        self._lock = lock or threading.RLock()

    @staticmethod
    def _utcnow() -> datetime:
        return datetime.now(UTC)

    def _require_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs_repository.get(job_id=job_id)
        if job is None:
            raise not_found("JOB_NOT_FOUND", "job not found")
        return job

    @staticmethod
    def _is_retry(job: dict[str, Any], *, action: str, actor_id: str, fingerprint: str) -> bool:
        last = job.get("last_transition") or {}
        return (
            job.get("status") == TRANSITION_RULES[action].to_status
            and last.get("action") == action
            and last.get("actor_id") == actor_id
            and last.get("fingerprint") == fingerprint
        )

    @staticmethod
    def _assert_actor(job: dict[str, Any], *, rule: TransitionRule, action: str, actor: dict[str, Any]) -> None:
        role = actor.get("role")
        if role != rule.role:
            raise forbidden(f"{role or 'anonymous'} may not {action} a job")
        if rule.role == Role.COMPANY and job.get("company_id") != actor.get("user_id"):
            raise forbidden("only the owning company may act on this job")
        if rule.role == Role.WORKER and job.get("worker_id") != actor.get("user_id"):
            raise forbidden("only the assigned worker may act on this job")

    def transition(
        self,
        *,
        job_id: str,
        action: str,
        actor: dict[str, Any],
        payload: dict[str, Any] | None = None,
        expected_status: str | None = None,
    ) -> dict[str, Any]:
        if action not in TRANSITION_RULES:
            raise ValidationError(f"unknown job action: {action}", code="JOB_ACTION_UNKNOWN", field="action")
        body = dict(payload or {})
        actor_id = str(actor.get("user_id", ""))
        fingerprint = _fingerprint(body)
        rule = TRANSITION_RULES[action]

        with self._lock:
            job = self._require_job(job_id)
            if self._is_retry(job, action=action, actor_id=actor_id, fingerprint=fingerprint):
                logger.info("job_transition_replayed job_id=%s action=%s", job_id, action)
                return job
            current = str(job.get("status"))
            if expected_status is not None and expected_status != current:
                raise StaleStateError(
                    job_id=job_id,
                    expected_status=expected_status,
                    actual_status=current,
                    latest=job,
                )
            if current not in rule.from_statuses:
                raise InvalidTransition(current_status=current, action=action)
            self._assert_actor(job, rule=rule, action=action, actor=actor)

            now = self._utcnow()
            staged = self._stage(job, action=action, payload=body, now=now)
            staged.job["status"] = rule.to_status
            staged.job["updated_at"] = now.isoformat()
            staged.job["last_transition"] = {
                "action": action,
                "actor_id": actor_id,
                "fingerprint": fingerprint,
                "from_status": current,
                "at": now.isoformat(),
            }
            saved = self._commit(staged, action=action, now=now)

        logger.info(
            "job_transitioned job_id=%s action=%s from=%s to=%s",
            job_id,
            action,
            current,
            rule.to_status,
        )
        return saved

    # -- staging -------------------------------------------------------------------

    def _stage(self, job: dict[str, Any], *, action: str, payload: dict[str, Any], now: datetime) -> StagedTransition:
        staged = StagedTransition(job=dict(job))
        title = str(job.get("title") or "your job")
        job_id = str(job["job_id"])
        if action in {JobAction.APPROVE, JobAction.REQUEST_REVISION} and self.ledger.current_submission(job_id) is None:
            raise ApiError(
                code="SUBMISSION_NOT_FOUND",
                message="job has no submission to review",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )

        if action == JobAction.ASSIGN:
            application_id = str(payload.get("application_id") or "").strip()
            if not application_id:
                raise ValidationError(
                    "application_id is required",
                    code="APPLICATION_REQUIRED",
                    field="application_id",
                )
            accepted, rejected = self.applications.stage_assignment(job, application_id=application_id, now=now)
            worker_id = str(accepted["worker_id"])
            staged.job["worker_id"] = worker_id
            if not staged.job.get("assigned_date"):
                staged.job["assigned_date"] = now.isoformat()
            staged.applications = [accepted, *rejected]
            staged.extra_notifications = [self.applications.rejection_notice(job, x, now=now) for x in rejected]
            staged.notification = self.notifications.prepare(
                user_id=worker_id,
                type=NotificationType.JOB,
                title="Job assigned",
                message=f"You have been assigned to {title}",
                link=f"/jobs/{job_id}",
                metadata={"job_id": job_id, "action": NotificationAction.ASSIGNED, "application_id": application_id},
                now=now,
            )
        elif action == JobAction.START:
            staged.notification = self.notifications.prepare(
                user_id=str(job["company_id"]),
                type=NotificationType.JOB,
                title="Work started",
                message=f"Work has started on {title}",
                link=f"/jobs/{job_id}",
                metadata={"job_id": job_id, "action": NotificationAction.STARTED},
                now=now,
            )
        elif action == JobAction.SUBMIT:
            staged.submission = self.ledger.prepare_submission(job, payload, now=now)
            resubmitted = job.get("status") == JobStatus.REVISION_REQUESTED
            staged.notification = self.notifications.prepare(
                user_id=str(job["company_id"]),
                type=NotificationType.SUBMISSION,
                title="Work resubmitted" if resubmitted else "Work submitted",
                message=f"A submission for {title} is ready for review",
                link=f"/jobs/{job_id}/submission",
                metadata={
                    "job_id": job_id,
                    "action": NotificationAction.RESUBMITTED if resubmitted else NotificationAction.SUBMITTED,
                    "submission_id": staged.submission["submission_id"],
                },
                now=now,
            )
        elif action == JobAction.APPROVE:
            staged.job["completed_date"] = now.isoformat()
            staged.review_status = SubmissionStatus.APPROVED
            staged.notification = self.notifications.prepare(
                user_id=str(job["worker_id"]),
                type=NotificationType.REVIEW,
                title="Submission approved",
                message=f"Your work on {title} was approved",
                link=f"/jobs/{job_id}",
                metadata={"job_id": job_id, "action": NotificationAction.APPROVED},
                now=now,
            )
        elif action == JobAction.REQUEST_REVISION:
            revision = self.ledger.prepare_revision_request(job, payload, now=now)
            staged.revision = revision
            staged.review_status = SubmissionStatus.REJECTED
            staged.job["revision_count"] = revision["revision_count"]
            staged.job["deadline"] = revision["new_deadline"]
            staged.notification = self.notifications.prepare(
                user_id=str(job["worker_id"]),
                type=NotificationType.REVIEW,
                title="Revision requested",
                message=revision["feedback"],
                link=f"/jobs/{job_id}/submission",
                metadata={
                    "job_id": job_id,
                    "action": NotificationAction.REVISION_REQUESTED,
                    "revision_count": revision["revision_count"],
                    "new_deadline": revision["new_deadline"],
                },
                now=now,
            )
        return staged

    def _commit(self, staged: StagedTransition, *, action: str, now: datetime) -> dict[str, Any]:
        job_id = str(staged.job["job_id"])
        saved = self.jobs_repository.save(job=staged.job)
        if staged.review_status is not None:
            self.ledger.mark_current_reviewed(job_id, status=staged.review_status, reviewed_at=now.isoformat())
        if staged.submission is not None:
            self.ledger.append_submission(staged.submission)
        if staged.revision is not None:
            self.ledger.append_revision_request(staged.revision)
        for application in staged.applications:
            self.applications.save(application)
        deliveries: list[dict[str, Any]] = []
        if staged.notification is not None:
            self.notifications.commit(staged.notification)
            deliveries.append(self.notifications.delivery_for(staged.notification))
        for notification in staged.extra_notifications:
            self.notifications.commit(notification)
            deliveries.append(self.notifications.delivery_for(notification))
        self.outbox.append(
            self.outbox.build_event(
                event_type=f"job.{action}",
                aggregate_type="job",
                aggregate_id=job_id,
                deliveries=deliveries,
            )
        )
        return saved
