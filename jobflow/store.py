from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from jobflow.applications import MIN_PROPOSAL_LENGTH, ApplicationService
from jobflow.errors import ApiError, ValidationError, forbidden, not_found
from jobflow.ledger import MIN_DESCRIPTION_LENGTH, SubmissionLedger
from jobflow.lifecycle import ALLOWED_TRANSITIONS, JobLifecycleEngine
from jobflow.messaging import MessagingService
from jobflow.models import JobStatus, Role, conversation_channel, user_channel
from jobflow.notifications import DEFAULT_TTL_DAYS, NotificationService
from jobflow.outbox import DEFAULT_RETAIN_PUBLISHED, DomainOutbox
from jobflow.push_hub import InMemoryPushHub, PushConnection, create_push_hub_from_env
from jobflow.repositories import (
    InMemoryApplicationsRepository,
    InMemoryConversationsRepository,
    InMemoryJobsRepository,
    InMemoryNotificationsRepository,
    InMemorySubmissionsRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any] | None
    expires_at: float = 0.0


class InMemoryStore:
    ALLOWED_TRANSITIONS = ALLOWED_TRANSITIONS

    def __init__(self, *, push_hub: InMemoryPushHub | None = None) -> None:
        self.notification_ttl_days = self._env_int("NOTIFICATION_TTL_DAYS", default=DEFAULT_TTL_DAYS, minimum=1)
        self.submission_min_description = self._env_int(
            "SUBMISSION_MIN_DESCRIPTION",
            default=MIN_DESCRIPTION_LENGTH,
            minimum=1,
        )
        self.application_min_proposal = self._env_int(
            "APPLICATION_MIN_PROPOSAL",
            default=MIN_PROPOSAL_LENGTH,
            minimum=1,
        )
        self.idempotency_ttl_s = self._env_int("IDEMPOTENCY_TTL_S", default=86400, minimum=1)
        self.outbox_retain_published = self._env_int(
            "OUTBOX_RETAIN_PUBLISHED",
            default=DEFAULT_RETAIN_PUBLISHED,
        )
        self.push_hub = push_hub or InMemoryPushHub()
        self._lock = threading.RLock()
        self._idempotency_done = threading.Condition(self._lock)
        self._clock: Callable[[], float] = time.monotonic
        self.idempotency_records: dict[tuple[str, str], IdempotencyRecord] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.applications: dict[str, dict[str, Any]] = {}
        self.submissions: dict[str, list[dict[str, Any]]] = {}
        self.revision_requests: dict[str, list[dict[str, Any]]] = {}
        self.notifications: dict[str, dict[str, Any]] = {}
        self.conversations: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, list[dict[str, Any]]] = {}
        self.outbox = DomainOutbox(retain_published=self.outbox_retain_published)
        self._bind_repositories()

    @staticmethod
    def _env_int(name: str, *, default: int, minimum: int = 0) -> int:
        raw = os.environ.get(name, "").strip()
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError:
            return default
        return max(minimum, value)

    def _bind_repositories(self) -> None:
        self.jobs_repository = InMemoryJobsRepository(self.jobs)
        self.applications_repository = InMemoryApplicationsRepository(self.applications)
        self.submissions_repository = InMemorySubmissionsRepository(self.submissions, self.revision_requests)
        self.notifications_repository = InMemoryNotificationsRepository(self.notifications)
        self.conversations_repository = InMemoryConversationsRepository(self.conversations, self.messages)
        self.ledger = SubmissionLedger(
            self.submissions_repository,
            min_description_length=self.submission_min_description,
        )
        self.notification_service = NotificationService(
            self.notifications_repository,
            ttl_days=self.notification_ttl_days,
        )
        self.application_service = ApplicationService(
            self.applications_repository,
            notifications=self.notification_service,
            outbox=self.outbox,
            min_proposal_length=self.application_min_proposal,
        )
        self.messaging = MessagingService(self.conversations_repository, outbox=self.outbox)
        self.lifecycle = JobLifecycleEngine(
            jobs_repository=self.jobs_repository,
            ledger=self.ledger,
            notifications=self.notification_service,
            applications=self.application_service,
            outbox=self.outbox,
            lock=self._lock,
        )

    def reset(self) -> None:
        with self._lock:
            self.idempotency_records.clear()
            self.jobs.clear()
            self.applications.clear()
            self.submissions.clear()
            self.revision_requests.clear()
            self.notifications.clear()
            self.conversations.clear()
            self.messages.clear()
            self.outbox.reset()
            self.push_hub.reset()
            self._bind_repositories()

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def _purge_idempotency(self, now: float) -> None:
        expired = [k for k, v in self.idempotency_records.items() if v.data is not None and v.expires_at <= now]
        for key in expired:
            del self.idempotency_records[key]

    def run_idempotent(
        self,
        *,
        endpoint: str,
        user_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        """Run ``execute`` once per key; repeats replay the stored result until it expires.

        A request that arrives while the first one with its key is still executing
        waits for that result instead of running ``execute`` again.
        """
        key = (f"{user_id}:{endpoint}", idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        with self._idempotency_done:
            self._purge_idempotency(self._clock())
            while True:
                record = self.idempotency_records.get(key)
                if record is None:
                    break
                if record.fingerprint != current_fingerprint:
                    raise ApiError(
                        code="IDEMPOTENCY_CONFLICT",
                        message="same key with different payload",
                        error_class="validation",
                        retryable=False,
                        http_status=409,
                    )
                if record.data is not None:
                    return record.data
                self._idempotency_done.wait()
            self.idempotency_records[key] = IdempotencyRecord(fingerprint=current_fingerprint, data=None)

        try:
            data = execute()
        except BaseException:
            with self._idempotency_done:
                self.idempotency_records.pop(key, None)
                self._idempotency_done.notify_all()
            raise
        with self._idempotency_done:
            self.idempotency_records[key] = IdempotencyRecord(
                fingerprint=current_fingerprint,
                data=data,
                expires_at=self._clock() + self.idempotency_ttl_s,
            )
            self._idempotency_done.notify_all()
        return data

    def dispatch_outbox(self) -> int:
        return self.outbox.dispatch(self.push_hub)

    # -- jobs ----------------------------------------------------------------------

    def create_job(self, *, actor: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
        if actor.get("role") != Role.COMPANY:
            raise forbidden("only companies may post jobs")
        title = str(payload.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required", field="title")
        deadline = payload.get("deadline")
        if deadline:
            try:
                datetime.fromisoformat(str(deadline).replace("Z", "+00:00"))
            except ValueError:
                raise ValidationError("deadline is not a valid datetime", field="deadline") from None
        now = self._utcnow_iso()
        job = {
            "job_id": f"job_{uuid.uuid4().hex[:12]}",
            "company_id": actor["user_id"],
            "worker_id": None,
            "title": title,
            "description": str(payload.get("description") or "").strip(),
            "status": JobStatus.POSTED,
            "deadline": deadline,
            "assigned_date": None,
            "completed_date": None,
            "revision_count": 0,
            "last_transition": None,
            "created_at": now,
            "updated_at": now,
        }
        with self._lock:
            created = self.jobs_repository.create(job=job)
        logger.info("job_created job_id=%s company_id=%s", job["job_id"], actor["user_id"])
        return public_job(created)

    def _visible_job(self, *, job_id: str, actor: dict[str, Any]) -> dict[str, Any]:
        job = self.jobs_repository.get(job_id=job_id)
        if job is None:
            raise not_found("JOB_NOT_FOUND", "job not found")
        user_id = actor.get("user_id")
        if (
            actor.get("role") == Role.ADMIN
            or job.get("status") == JobStatus.POSTED
            or user_id in {job.get("company_id"), job.get("worker_id")}
        ):
            return job
        raise not_found("JOB_NOT_FOUND", "job not found")

    def get_job(self, *, job_id: str, actor: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return public_job(self._visible_job(job_id=job_id, actor=actor))

    def list_jobs(self, *, actor: dict[str, Any], status: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            if actor.get("role") == Role.ADMIN:
                rows = sorted(self.jobs.values(), key=lambda x: x.get("created_at", ""), reverse=True)
            else:
                rows = self.jobs_repository.list_for_user(user_id=str(actor.get("user_id")))
        if status:
            rows = [x for x in rows if x.get("status") == status]
        return [public_job(x) for x in rows]

    def transition_job(
        self,
        *,
        job_id: str,
        action: str,
        actor: dict[str, Any],
        payload: dict[str, Any] | None = None,
        expected_status: str | None = None,
    ) -> dict[str, Any]:
        try:
            job = self.lifecycle.transition(
                job_id=job_id,
                action=action,
                actor=actor,
                payload=payload,
                expected_status=expected_status,
            )
        except ApiError as exc:
            latest = getattr(exc, "latest", None)
            if isinstance(latest, dict):
                exc.latest = public_job(latest)
            raise
        self.dispatch_outbox()
        return public_job(job)

    def get_submission(self, *, job_id: str, actor: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._visible_job(job_id=job_id, actor=actor)
            return self.ledger.history(job_id)

    # -- applications ----------------------------------------------------------------

    def apply_to_job(self, *, job_id: str, actor: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
        if actor.get("role") != Role.WORKER:
            raise forbidden("only workers may apply to jobs")
        with self._lock:
            job = self._visible_job(job_id=job_id, actor=actor)
            application = self.application_service.apply(job, worker_id=str(actor["user_id"]), payload=payload)
        self.dispatch_outbox()
        return application

    def list_applications(self, *, job_id: str, actor: dict[str, Any]) -> list[dict[str, Any]]:
        """Owning company and admins see every application; a worker sees only their own."""
        with self._lock:
            job = self._visible_job(job_id=job_id, actor=actor)
            role = actor.get("role")
            if role == Role.ADMIN or (role == Role.COMPANY and job.get("company_id") == actor.get("user_id")):
                return self.application_service.list_for_job(job_id=job_id)
            if role == Role.WORKER:
                return self.application_service.list_for_job(job_id=job_id, worker_id=str(actor.get("user_id")))
        raise forbidden("only the owning company may list applications")

    def list_my_applications(self, *, actor: dict[str, Any]) -> list[dict[str, Any]]:
        if actor.get("role") != Role.WORKER:
            raise forbidden("only workers have applications")
        with self._lock:
            return self.application_service.list_for_worker(worker_id=str(actor["user_id"]))

    # -- notifications ---------------------------------------------------------------

    def get_notifications(self, *, user_id: str, **filters: Any) -> list[dict[str, Any]]:
        with self._lock:
            return self.notification_service.get_notifications(user_id=user_id, **filters)

    def unread_count(self, *, user_id: str) -> int:
        with self._lock:
            return self.notification_service.unread_count(user_id=user_id)

    def mark_notification_read(self, *, user_id: str, notification_id: str) -> dict[str, Any]:
        with self._lock:
            return self.notification_service.mark_read(user_id=user_id, notification_id=notification_id)

    def mark_all_notifications_read(self, *, user_id: str) -> dict[str, Any]:
        with self._lock:
            return self.notification_service.mark_all_read(user_id=user_id)

    def delete_notification(self, *, user_id: str, notification_id: str) -> dict[str, Any]:
        with self._lock:
            return self.notification_service.delete(user_id=user_id, notification_id=notification_id)

    def delete_all_read_notifications(self, *, user_id: str) -> dict[str, Any]:
        with self._lock:
            return self.notification_service.delete_all_read(user_id=user_id)

    # -- conversations ---------------------------------------------------------------

    def get_or_create_conversation(
        self,
        *,
        user_id: str,
        other_user_id: str,
        job_id: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            if job_id is not None and self.jobs_repository.get(job_id=job_id) is None:
                raise not_found("JOB_NOT_FOUND", "job not found")
            row = self.messaging.get_or_create_conversation(
                user_id=user_id,
                other_user_id=other_user_id,
                job_id=job_id,
            )
        return next(
            (x for x in self.list_conversations(user_id=user_id) if x["id"] == row["conversation_id"]),
            {},
        )

    def list_conversations(self, *, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return self.messaging.list_conversations(user_id=user_id)

    def send_message(
        self,
        *,
        conversation_id: str,
        sender_id: str,
        content: str,
        attachments: list[dict[str, Any]] | None = None,
        client_temp_id: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            message = self.messaging.send_message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                attachments=attachments,
                client_temp_id=client_temp_id,
            )
        self.dispatch_outbox()
        return message

    def get_messages(
        self,
        *,
        conversation_id: str,
        user_id: str,
        limit: int = 50,
        before: int | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            return self.messaging.get_messages(
                conversation_id=conversation_id,
                user_id=user_id,
                limit=limit,
                before=before,
            )

    def mark_conversation_read(self, *, conversation_id: str, user_id: str) -> dict[str, Any]:
        with self._lock:
            return self.messaging.mark_conversation_read(conversation_id=conversation_id, user_id=user_id)

    # -- push ------------------------------------------------------------------------

    def open_push_connection(self, *, user_id: str, loop: Any = None) -> PushConnection:
        """Register a session and queue its ``connected`` frame with the current feed position."""
        conn = self.push_hub.connect(user_id=user_id, loop=loop)
        own_channel = user_channel(user_id)
        conn.send(
            {
                "event": "connected",
                "channel": None,
                "seq": None,
                "payload": {
                    "connection_id": conn.connection_id,
                    "user_id": user_id,
                    "channels": {own_channel: self.push_hub.current_seq(own_channel)},
                },
            }
        )
        return conn

    def handle_client_frame(self, conn: PushConnection, frame: dict[str, Any]) -> dict[str, Any]:
        """Apply one frame a connected client emitted; returns the reply frame."""
        event = str(frame.get("event") or "")
        payload = frame.get("payload") if isinstance(frame.get("payload"), dict) else {}
        conversation_id = str(payload.get("conversation_id") or "")
        try:
            if event not in {"join_conversation", "leave_conversation", "typing", "stop_typing", "send_message"}:
                raise ValidationError(f"unknown event: {event}", code="PUSH_EVENT_UNKNOWN", field="event")
            if not conversation_id:
                raise ValidationError("conversation_id is required", field="conversation_id")
            channel = conversation_channel(conversation_id)
            if event == "leave_conversation":
                self.push_hub.leave(conn, channel)
                return _reply(event, {"conversation_id": conversation_id})
            with self._lock:
                self.messaging.require_participant(conversation_id=conversation_id, user_id=conn.user_id)
            if event == "join_conversation":
                self.push_hub.join(conn, channel)
                return _reply(event, {"conversation_id": conversation_id, "seq": self.push_hub.current_seq(channel)})
            if event in {"typing", "stop_typing"}:
                self.push_hub.publish(
                    channel=channel,
                    event="user_typing" if event == "typing" else "user_stop_typing",
                    payload={"conversation_id": conversation_id, "user_id": conn.user_id},
                    ephemeral=True,
                    exclude_connection_id=conn.connection_id,
                )
                return _reply(event, {"conversation_id": conversation_id})
            return _reply(event, self._relay_message(conn, conversation_id, payload))
        except ApiError as exc:
            logger.info("push_frame_rejected event=%s code=%s user_id=%s", event, exc.code, conn.user_id)
            return {
                "event": "error",
                "channel": None,
                "seq": None,
                "payload": {"request": event, "code": exc.code, "message": exc.message},
            }

    def _relay_message(self, conn: PushConnection, conversation_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        message = payload.get("message") if isinstance(payload.get("message"), dict) else {}
        message_id = str(message.get("id") or "")
        if not message_id:
            sent = self.send_message(
                conversation_id=conversation_id,
                sender_id=conn.user_id,
                content=str(message.get("content") or ""),
                attachments=message.get("attachments"),
                client_temp_id=message.get("client_temp_id"),
            )
            return {"conversation_id": conversation_id, "message": sent}
        with self._lock:
            stored = self.messaging.get_message(
                conversation_id=conversation_id,
                message_id=message_id,
                user_id=conn.user_id,
            )
        if stored["sender_id"] != conn.user_id:
            raise forbidden("only the sender may relay a message")
        self.push_hub.publish(
            channel=conversation_channel(conversation_id),
            event="new_message",
            payload={"conversation_id": conversation_id, "message": stored},
            dedupe_key=message_id,
        )
        return {"conversation_id": conversation_id, "message": stored}


def _reply(request: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"event": "ack", "channel": None, "seq": None, "payload": {"request": request, **payload}}


def public_job(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row.get("job_id"),
        "company_id": row.get("company_id"),
        "worker_id": row.get("worker_id"),
        "title": row.get("title"),
        "description": row.get("description"),
        "status": row.get("status"),
        "deadline": row.get("deadline"),
        "assigned_date": row.get("assigned_date"),
        "completed_date": row.get("completed_date"),
        "revision_count": int(row.get("revision_count") or 0),
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    }


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    return InMemoryStore(push_hub=create_push_hub_from_env(env))


store = create_store_from_env()
