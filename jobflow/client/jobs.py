from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from jobflow.errors import StaleStateError, TransportError
from jobflow.models import JobAction

logger = logging.getLogger(__name__)


class JobWorkflowClient:
    """Issues lifecycle actions against the job status the caller last saw.

    Transport failures are retried with capped backoff under one
    Idempotency-Key, which the server replays, so a retry never applies an
    action twice. A status conflict is surfaced as ``StaleStateError`` carrying
    the freshly fetched job for the caller to re-present.
    """

    def __init__(
        self,
        api: Any,
        *,
        max_attempts: int = 4,
        retry_base_ms: int = 500,
        retry_max_ms: int = 30000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.api = api
        self.max_attempts = max(1, int(max_attempts))
        self.retry_base_ms = max(0, int(retry_base_ms))
        self.retry_max_ms = max(self.retry_base_ms, int(retry_max_ms))
        self._sleep = sleep

    @staticmethod
    def _retry_jitter_ms(*, job_id: str, attempt: int) -> int:
        digest = hashlib.sha256(f"{job_id}:{attempt}".encode("utf-8")).digest()
        return int.from_bytes(digest[:2], byteorder="big") % 301

    def retry_backoff_ms(self, *, job_id: str, attempt: int) -> int:
        normalized = max(1, int(attempt))
        exponential = self.retry_base_ms * (2 ** (normalized - 1))
        return min(self.retry_max_ms, exponential) + self._retry_jitter_ms(job_id=job_id, attempt=normalized)

    async def transition(
        self,
        job_id: str,
        action: str,
        payload: dict[str, Any] | None = None,
        *,
        expected_status: str | None = None,
    ) -> dict[str, Any]:
        idempotency_key = f"jt_{uuid.uuid4().hex}"
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.api.transition_job(
                    job_id,
                    action,
                    payload,
                    expected_status=expected_status,
                    idempotency_key=idempotency_key,
                )
            except TransportError as exc:
                if attempt >= self.max_attempts:
                    logger.warning("job_transition_gave_up job_id=%s action=%s attempts=%s", job_id, action, attempt)
                    raise
                delay_ms = self.retry_backoff_ms(job_id=job_id, attempt=attempt)
                logger.info(
                    "job_transition_retry job_id=%s action=%s attempt=%s delay_ms=%s code=%s",
                    job_id,
                    action,
                    attempt,
                    delay_ms,
                    exc.code,
                )
                await self._sleep(delay_ms / 1000)
            except StaleStateError as exc:
                latest = exc.latest if exc.latest is not None else await self.api.get_job(job_id)
                raise StaleStateError(
                    job_id=job_id,
                    expected_status=expected_status,
                    actual_status=str(latest.get("status")),
                    latest=latest,
                ) from exc

    async def assign(self, job: dict[str, Any], application_id: str) -> dict[str, Any]:
        return await self.transition(
            job["id"],
            JobAction.ASSIGN,
            {"application_id": application_id},
            expected_status=job.get("status"),
        )

    async def start(self, job: dict[str, Any]) -> dict[str, Any]:
        return await self.transition(job["id"], JobAction.START, expected_status=job.get("status"))

    async def submit(
        self,
        job: dict[str, Any],
        *,
        description: str,
        links: list[str] | None = None,
        files: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        payload = {"description": description, "links": links or [], "files": files or []}
        return await self.transition(job["id"], JobAction.SUBMIT, payload, expected_status=job.get("status"))

    async def approve(self, job: dict[str, Any]) -> dict[str, Any]:
        return await self.transition(job["id"], JobAction.APPROVE, expected_status=job.get("status"))

    async def request_revision(
        self,
        job: dict[str, Any],
        *,
        feedback: str,
        new_deadline: str,
        attachments: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        payload = {"feedback": feedback, "new_deadline": new_deadline, "attachments": attachments or []}
        return await self.transition(
            job["id"],
            JobAction.REQUEST_REVISION,
            payload,
            expected_status=job.get("status"),
        )
