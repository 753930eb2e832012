from __future__ import annotations

from typing import Any


class InMemoryApplicationsRepository:
    def __init__(self, applications: dict[str, dict[str, Any]]) -> None:
        self._applications = applications

    def create(self, *, application: dict[str, Any]) -> dict[str, Any]:
        self._applications[str(application["application_id"])] = dict(application)
        return dict(application)

    def save(self, *, application: dict[str, Any]) -> dict[str, Any]:
        return self.create(application=application)

    def get(self, *, application_id: str) -> dict[str, Any] | None:
        row = self._applications.get(application_id)
        if row is None:
            return None
        return dict(row)

    def find(self, *, job_id: str, worker_id: str) -> dict[str, Any] | None:
        for row in self._applications.values():
            if row.get("job_id") == job_id and row.get("worker_id") == worker_id:
                return dict(row)
        return None

    def list_for_job(self, *, job_id: str) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._applications.values() if x.get("job_id") == job_id]
        return sorted(rows, key=lambda x: x.get("created_at", ""), reverse=True)

    def list_for_worker(self, *, worker_id: str) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._applications.values() if x.get("worker_id") == worker_id]
        return sorted(rows, key=lambda x: x.get("created_at", ""), reverse=True)
