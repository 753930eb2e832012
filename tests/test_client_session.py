import asyncio

import httpx
import pytest

from jobflow.client.event_bus import ConnectionState
from jobflow.client.rest import HttpMarketplaceApi
from jobflow.client.session import ClientSession, ClientSettings
from jobflow.client.transports import InProcessTransport
from jobflow.store import store

PROPOSAL = "Built a dozen marketing landing pages on this stack and can start today."


def _api(app, user_id: str, role: str) -> HttpMarketplaceApi:
    return HttpMarketplaceApi(
        "http://testserver",
        headers={"x-user-id": user_id, "x-user-role": role},
        transport=httpx.ASGITransport(app=app),
    )


async def _assign(company_api, worker_api, job_id: str) -> None:
    application = await worker_api.apply_to_job(job_id, PROPOSAL)
    await company_api.transition_job(job_id, "assign", {"application_id": application["id"]})


async def _eventually(predicate, timeout: float = 2.0) -> None:
    async def _wait():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_wait(), timeout=timeout)


def _fast_settings() -> ClientSettings:
    return ClientSettings(poll_interval_s=60.0, reconnect_base_ms=1, reconnect_max_ms=5)


@pytest.mark.asyncio
async def test_session_receives_pushed_notifications(app):
    transport = InProcessTransport(store, user_id="worker_1")
    async with _api(app, "worker_1", "worker") as worker_api, _api(app, "company_1", "company") as company_api:
        session = ClientSession(user_id="worker_1", api=worker_api, transport=transport, settings=_fast_settings())
        await session.start()
        try:
            await asyncio.wait_for(session.bus.connected_event.wait(), timeout=2)
            job = await company_api.create_job(title="Landing page")
            await _assign(company_api, worker_api, job["id"])

            await _eventually(lambda: session.notifications.unread_count == 1)
            latest = session.notifications.notifications[0]
            assert latest["metadata"]["action"] == "assigned"
            assert latest["metadata"]["job_id"] == job["id"]
        finally:
            await session.stop()


@pytest.mark.asyncio
async def test_missed_push_is_recovered_by_reconcile_and_reconnect(app):
    transport = InProcessTransport(store, user_id="worker_1")
    async with _api(app, "worker_1", "worker") as worker_api, _api(app, "company_1", "company") as company_api:
        session = ClientSession(user_id="worker_1", api=worker_api, transport=transport, settings=_fast_settings())
        await session.start()
        try:
            await asyncio.wait_for(session.bus.connected_event.wait(), timeout=2)
            first = await company_api.create_job(title="Landing page")
            missed = [await company_api.create_job(title=f"Page {idx}") for idx in range(3)]
            await _assign(company_api, worker_api, first["id"])
            await _eventually(lambda: session.notifications.unread_count == 1)

            transport.available = False
            transport.drop()
            await _eventually(lambda: session.bus.state != ConnectionState.CONNECTED)
            for job in missed:
                await _assign(company_api, worker_api, job["id"])
            await asyncio.sleep(0.05)
            assert len(session.notifications.notifications) == 1
            assert session.notifications.unread_count == 1

            assert await session.notifications.reconcile_unread() == 4
            assert session.notifications.unread_count == 4

            transport.available = True
            await _eventually(lambda: len(session.notifications.notifications) == 4)
            assert session.bus.state == ConnectionState.CONNECTED
            job_ids = {x["metadata"]["job_id"] for x in session.notifications.notifications}
            assert job_ids == {first["id"], *(job["id"] for job in missed)}
        finally:
            await session.stop()


@pytest.mark.asyncio
async def test_session_stop_closes_the_push_connection(app):
    transport = InProcessTransport(store, user_id="worker_1")
    async with _api(app, "worker_1", "worker") as worker_api:
        session = ClientSession(user_id="worker_1", api=worker_api, transport=transport, settings=_fast_settings())
        await session.start()
        await asyncio.wait_for(session.bus.connected_event.wait(), timeout=2)
        assert store.push_hub.connection_count() == 1

        await session.stop()

        assert store.push_hub.connection_count() == 0
        assert session.bus.state == ConnectionState.DISCONNECTED


class HangingSendApi:
    async def get_notifications(self, **_):
        return {"items": [], "unread_count": 0}

    async def get_conversations(self):
        return []

    async def get_unread_count(self):
        return 0

    async def send_message(self, conversation_id, content, attachments=None, *, client_temp_id=None):
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_session_marks_unacknowledged_sends_failed():
    settings = ClientSettings(
        poll_interval_s=60.0,
        reconnect_base_ms=1,
        reconnect_max_ms=5,
        pending_window_s=0.05,
        expiry_interval_s=0.01,
    )
    session = ClientSession(
        user_id="worker_1",
        api=HangingSendApi(),
        transport=InProcessTransport(store, user_id="worker_1"),
        settings=settings,
    )
    await session.start()
    send = asyncio.create_task(session.conversations.send("c1", "anyone there?"))
    try:
        await _eventually(lambda: len(session.conversations.failed_messages("c1")) == 1)
        assert session.conversations.pending.pending_keys() == []
    finally:
        send.cancel()
        await session.stop()


def test_staleness_follows_the_last_successful_fetch():
    now = [0.0]
    session = ClientSession(
        user_id="worker_1",
        api=object(),
        transport=InProcessTransport(store, user_id="worker_1"),
        settings=ClientSettings(stale_after_s=120.0),
        clock=lambda: now[0],
    )

    assert session.is_stale("conversations") is False
    session.mark_fresh("conversations")
    now[0] = 100.0
    assert session.is_stale("conversations") is False
    now[0] = 121.0
    assert session.is_stale("conversations") is True

    session.notifications.last_reconciled_at = 110.0
    assert session.is_stale() is False


def test_settings_from_env():
    settings = ClientSettings.from_env(
        {
            "JOBFLOW_API_URL": "https://api.example.com",
            "JOBFLOW_POLL_INTERVAL_S": "15",
            "JOBFLOW_RECONNECT_BASE_MS": "200",
            "JOBFLOW_RECONNECT_MAX_MS": "100",
            "JOBFLOW_STALE_AFTER_S": "oops",
            "JOBFLOW_PENDING_WINDOW_S": "5",
        }
    )

    assert settings.api_url == "https://api.example.com"
    assert settings.poll_interval_s == 15.0
    assert settings.reconnect_base_ms == 200
    assert settings.reconnect_max_ms == 200
    assert settings.stale_after_s == 120.0
    assert settings.pending_window_s == 5.0
    assert ClientSettings.from_env({}) == ClientSettings()


def test_session_hands_the_pending_window_to_conversations():
    session = ClientSession(
        user_id="worker_1",
        api=object(),
        transport=InProcessTransport(store, user_id="worker_1"),
        settings=ClientSettings(pending_window_s=7.5),
    )

    assert session.conversations.pending.window_s == 7.5
