from __future__ import annotations

from typing import Any


class InMemoryJobsRepository:
    def __init__(self, jobs: dict[str, dict[str, Any]]) -> None:
        self._jobs = jobs

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        self._jobs[str(job["job_id"])] = dict(job)
        return dict(job)

    def save(self, *, job: dict[str, Any]) -> dict[str, Any]:
        return self.create(job=job)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        row = self._jobs.get(job_id)
        if row is None:
            return None
        return dict(row)

    def list_for_user(self, *, user_id: str) -> list[dict[str, Any]]:
        rows = [
            dict(x)
            for x in self._jobs.values()
            if x.get("company_id") == user_id or x.get("worker_id") == user_id
        ]
        return sorted(rows, key=lambda x: x.get("created_at", ""), reverse=True)
