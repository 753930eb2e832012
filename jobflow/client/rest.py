from __future__ import annotations

import logging
from typing import Any

import httpx

from jobflow.errors import TransportError, error_from_envelope

logger = logging.getLogger(__name__)


class HttpMarketplaceApi:
    """Async client for the marketplace REST surface.

    Error envelopes come back as the typed errors the server raised; network
    failures, timeouts and 5xx responses come back as ``TransportError``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        merged = dict(headers or {})
        if token:
            merged["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=merged,
            timeout=timeout_s,
            transport=transport,
        )

    async def __aenter__(self) -> "HttpMarketplaceApi":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        query = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            resp = await self._client.request(method, path, json=json, params=query or None, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportError(f"{method} {path} timed out", code="TRANSPORT_TIMEOUT") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {type(exc).__name__}") from exc
        try:
            body = resp.json()
        except ValueError:
            body = None
        if resp.status_code >= 400 or not isinstance(body, dict) or not body.get("success", False):
            error = error_from_envelope(body if isinstance(body, dict) else {}, http_status=resp.status_code)
            logger.debug("api_request_failed method=%s path=%s code=%s", method, path, error.code)
            raise error
        return body.get("data")

    # -- jobs ------------------------------------------------------------------------

    async def create_job(self, *, title: str, description: str = "", deadline: str | None = None) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/api/v1/jobs",
            json={"title": title, "description": description, "deadline": deadline},
        )

    async def list_jobs(self, *, status: str | None = None) -> list[dict[str, Any]]:
        return await self._request("GET", "/api/v1/jobs", params={"status": status})

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/v1/jobs/{job_id}")

    async def transition_job(
        self,
        job_id: str,
        action: str,
        payload: dict[str, Any] | None = None,
        *,
        expected_status: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/v1/jobs/{job_id}/transitions",
            json={"action": action, "expected_status": expected_status, "payload": payload or {}},
            idempotency_key=idempotency_key,
        )

    async def get_submission(self, job_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/v1/jobs/{job_id}/submission")

    # -- applications ----------------------------------------------------------------

    async def apply_to_job(
        self,
        job_id: str,
        proposal: str,
        *,
        proposed_rate: float | None = None,
        cover_letter: str = "",
        estimated_duration: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/v1/jobs/{job_id}/applications",
            json={
                "proposal": proposal,
                "proposed_rate": proposed_rate,
                "cover_letter": cover_letter,
                "estimated_duration": estimated_duration,
            },
            idempotency_key=idempotency_key,
        )

    async def list_applications(self, job_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/api/v1/jobs/{job_id}/applications")

    async def list_my_applications(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/api/v1/applications")

    # -- conversations ---------------------------------------------------------------

    async def create_conversation(self, other_user_id: str, job_id: str | None = None) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/api/v1/conversations",
            json={"other_user_id": other_user_id, "job_id": job_id},
        )

    async def get_conversations(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/api/v1/conversations")

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        attachments: list[dict[str, Any]] | None = None,
        *,
        client_temp_id: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/v1/conversations/{conversation_id}/messages",
            json={"content": content, "attachments": attachments or [], "client_temp_id": client_temp_id},
            idempotency_key=client_temp_id,
        )

    async def get_messages(
        self,
        conversation_id: str,
        *,
        limit: int = 50,
        before: int | None = None,
    ) -> list[dict[str, Any]]:
        return await self._request(
            "GET",
            f"/api/v1/conversations/{conversation_id}/messages",
            params={"limit": limit, "before": before},
        )

    async def mark_conversation_read(self, conversation_id: str) -> dict[str, Any]:
        return await self._request("PATCH", f"/api/v1/conversations/{conversation_id}/read")

    # -- notifications ---------------------------------------------------------------

    async def get_notifications(
        self,
        *,
        read: bool | None = None,
        type: str | None = None,
        limit: int = 20,
        skip: int = 0,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"type": type, "limit": limit, "skip": skip}
        if read is not None:
            params["read"] = "true" if read else "false"
        return await self._request("GET", "/api/v1/notifications", params=params)

    async def get_unread_count(self) -> int:
        data = await self._request("GET", "/api/v1/notifications/unread-count")
        return int(data["unread_count"])

    async def mark_notification_read(self, notification_id: str) -> dict[str, Any]:
        return await self._request("PATCH", f"/api/v1/notifications/{notification_id}/read")

    async def mark_all_read(self) -> dict[str, Any]:
        return await self._request("PATCH", "/api/v1/notifications/read-all")

    async def delete_notification(self, notification_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/api/v1/notifications/{notification_id}")

    async def delete_all_read(self) -> dict[str, Any]:
        return await self._request("DELETE", "/api/v1/notifications/read")
