"""Append-only history of submissions and revision requests per job.

Records are never edited after creation apart from the review stamp
(``status`` / ``reviewed_at``) a submission receives when the company
approves it or sends it back. The *current* submission is the newest one.
"""
from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse

from jobflow.errors import ValidationError
from jobflow.models import SubmissionStatus
from jobflow.repositories.submissions import InMemorySubmissionsRepository

MIN_DESCRIPTION_LENGTH = 20


def _parse_datetime(value: Any, *, field: str) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value or "").strip()
        if not raw:
            raise ValidationError(f"{field} is required", code="REVISION_DEADLINE_REQUIRED", field=field)
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"{field} is not a valid datetime", field=field) from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def is_resolvable_url(url: str) -> bool:
    parsed = urlparse(url.strip())
    if parsed.scheme in {"http", "https"}:
        return bool(parsed.netloc)
    # Relative URLs handed back by the upload service, e.g. /uploads/abc.pdf
    return not parsed.scheme and not parsed.netloc and parsed.path.startswith("/")


def normalize_files(files: Any, *, field: str = "files") -> list[dict[str, Any]]:
    if files is None:
        return []
    if not isinstance(files, list):
        raise ValidationError(f"{field} must be a list", field=field)
    normalized: list[dict[str, Any]] = []
    for idx, item in enumerate(files):
        if not isinstance(item, dict):
            raise ValidationError(f"{field}[{idx}] must be an object", field=field)
        name = str(item.get("file_name") or item.get("fileName") or "").strip()
        url = str(item.get("file_url") or item.get("fileUrl") or "").strip()
        file_type = str(item.get("file_type") or item.get("fileType") or "").strip()
        if not name:
            raise ValidationError(f"{field}[{idx}] is missing a file name", code="FILE_NAME_REQUIRED", field=field)
        if not url or not is_resolvable_url(url):
            raise ValidationError(f"{field}[{idx}] has no resolvable url", code="FILE_URL_INVALID", field=field)
        normalized.append({"file_name": name, "file_url": url, "file_type": file_type})
    return normalized


def is_link(value: str) -> bool:
    """Accept resolvable urls and bare host names such as ``www.example.com/demo``."""
    if not value or any(ch.isspace() for ch in value):
        return False
    if is_resolvable_url(value):
        return True
    parsed = urlparse(value)
    if parsed.netloc:
        return False
    host = urlparse(f"//{value}").hostname or ""
    return "." in host.strip(".")


def _normalize_links(links: Any) -> list[str]:
    if links is None:
        return []
    if not isinstance(links, list):
        raise ValidationError("links must be a list", field="links")
    cleaned = [str(x).strip() for x in links if str(x).strip()]
    for link in cleaned:
        if not is_link(link):
            raise ValidationError(f"link is not a valid url: {link}", code="LINK_INVALID", field="links")
    return cleaned


class SubmissionLedger:
    def __init__(
        self,
        repository: InMemorySubmissionsRepository,
        *,
        min_description_length: int = MIN_DESCRIPTION_LENGTH,
    ) -> None:
        self.repository = repository
        self.min_description_length = max(1, int(min_description_length))

    @staticmethod
    def _utcnow() -> datetime:
        return datetime.now(UTC)

    # -- staging: validate and build without writing ---------------------------

    def prepare_submission(
        self,
        job: dict[str, Any],
        payload: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        description = str(payload.get("description") or "").strip()
        if len(description) < self.min_description_length:
            raise ValidationError(
                f"description must be at least {self.min_description_length} characters",
                code="SUBMISSION_DESCRIPTION_TOO_SHORT",
                field="description",
            )
        created = now or self._utcnow()
        job_id = str(job["job_id"])
        return {
            "submission_id": f"sub_{uuid.uuid4().hex[:12]}",
            "job_id": job_id,
            "worker_id": job.get("worker_id"),
            "company_id": job.get("company_id"),
            "description": description,
            "links": _normalize_links(payload.get("links")),
            "files": normalize_files(payload.get("files")),
            "status": SubmissionStatus.PENDING,
            "revision_index": self.revision_count(job_id),
            "created_at": created.isoformat(),
            "reviewed_at": None,
        }

    def prepare_revision_request(
        self,
        job: dict[str, Any],
        payload: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        feedback = str(payload.get("feedback") or "").strip()
        if not feedback:
            raise ValidationError("feedback is required", code="REVISION_FEEDBACK_REQUIRED", field="feedback")
        created = now or self._utcnow()
        new_deadline = _parse_datetime(payload.get("new_deadline"), field="new_deadline")
        if new_deadline <= created:
            raise ValidationError(
                "new_deadline must be in the future",
                code="REVISION_DEADLINE_IN_PAST",
                field="new_deadline",
            )
        job_id = str(job["job_id"])
        return {
            "revision_id": f"rev_{uuid.uuid4().hex[:12]}",
            "job_id": job_id,
            "company_id": job.get("company_id"),
            "feedback": feedback,
            "new_deadline": new_deadline.isoformat(),
            "attachments": normalize_files(payload.get("attachments"), field="attachments"),
            "revision_count": self.revision_count(job_id) + 1,
            "created_at": created.isoformat(),
        }

    # -- commit ------------------------------------------------------------------

    def append_submission(self, submission: dict[str, Any]) -> dict[str, Any]:
        return self.repository.append_submission(submission=submission)

    def append_revision_request(self, revision: dict[str, Any]) -> dict[str, Any]:
        return self.repository.append_revision_request(revision=revision)

    def mark_current_reviewed(self, job_id: str, *, status: str, reviewed_at: str) -> dict[str, Any] | None:
        current = self.current_submission(job_id)
        if current is None:
            return None
        return self.repository.mark_reviewed(
            job_id=job_id,
            submission_id=str(current["submission_id"]),
            status=status,
            reviewed_at=reviewed_at,
        )

    def record_submission(self, job: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
        return self.append_submission(self.prepare_submission(job, payload))

    def record_revision_request(self, job: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
        return self.append_revision_request(self.prepare_revision_request(job, payload))

    # -- reads -------------------------------------------------------------------

    def submissions(self, job_id: str) -> list[dict[str, Any]]:
        # Insertion order breaks createdAt ties, so the last element is current.
        rows = self.repository.list_submissions(job_id=job_id)
        ordered = sorted(enumerate(rows), key=lambda x: (x[1].get("created_at", ""), x[0]))
        return [row for _, row in ordered]

    def current_submission(self, job_id: str) -> dict[str, Any] | None:
        rows = self.submissions(job_id)
        return rows[-1] if rows else None

    def revision_requests(self, job_id: str) -> list[dict[str, Any]]:
        return self.repository.list_revision_requests(job_id=job_id)

    def revision_count(self, job_id: str) -> int:
        return len(self.repository.list_revision_requests(job_id=job_id))

    def history(self, job_id: str) -> dict[str, Any]:
        submissions = self.submissions(job_id)
        return {
            "job_id": job_id,
            "current": submissions[-1] if submissions else None,
            "submissions": submissions,
            "revision_requests": self.revision_requests(job_id),
            "revision_count": self.revision_count(job_id),
        }
