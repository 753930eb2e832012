from __future__ import annotations

from typing import Any


class InMemorySubmissionsRepository:
    """Append-only storage for submissions and revision requests."""

    def __init__(
        self,
        submissions: dict[str, list[dict[str, Any]]],
        revision_requests: dict[str, list[dict[str, Any]]],
    ) -> None:
        self._submissions = submissions
        self._revision_requests = revision_requests

    def append_submission(self, *, submission: dict[str, Any]) -> dict[str, Any]:
        self._submissions.setdefault(str(submission["job_id"]), []).append(dict(submission))
        return dict(submission)

    def append_revision_request(self, *, revision: dict[str, Any]) -> dict[str, Any]:
        self._revision_requests.setdefault(str(revision["job_id"]), []).append(dict(revision))
        return dict(revision)

    def list_submissions(self, *, job_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._submissions.get(job_id, [])]

    def list_revision_requests(self, *, job_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._revision_requests.get(job_id, [])]

    def mark_reviewed(self, *, job_id: str, submission_id: str, status: str, reviewed_at: str) -> dict[str, Any] | None:
        # Review stamps are the only mutation a stored submission accepts.
        for row in self._submissions.get(job_id, []):
            if row.get("submission_id") == submission_id:
                row["status"] = status
                row["reviewed_at"] = reviewed_at
                return dict(row)
        return None
