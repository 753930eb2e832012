import asyncio

import pytest

from jobflow.client.conversations import ConversationSynchronizer, MessageStatus, TypingDebouncer
from jobflow.client.events import NewMessage, UserStopTyping, UserTyping
from jobflow.errors import TransportError

ME = "worker_1"
THEM = "company_1"


class FakeMessagesApi:
    def __init__(self):
        self.messages: dict[str, list[dict]] = {}
        self.conversations: list[dict] = []
        self.fail = False
        self.gate: asyncio.Event | None = None
        self.before_reply = None
        self.read_calls: list[str] = []
        self.read_gate: asyncio.Event | None = None

    def _check(self):
        if self.fail:
            raise TransportError("offline")

    def add(self, conversation_id: str, *, sender_id: str, content: str, created_at: str, client_temp_id=None) -> dict:
        rows = self.messages.setdefault(conversation_id, [])
        message = {
            "id": f"msg_{conversation_id}_{len(rows) + 1}",
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "attachments": [],
            "seq": len(rows) + 1,
            "client_temp_id": client_temp_id,
            "created_at": created_at,
        }
        rows.append(message)
        return dict(message)

    async def send_message(self, conversation_id, content, attachments=None, *, client_temp_id=None):
        if self.gate is not None:
            await self.gate.wait()
        self._check()
        message = self.add(
            conversation_id,
            sender_id=ME,
            content=content,
            created_at=f"2026-05-01T10:00:{len(self.messages.get(conversation_id, [])):02d}+00:00",
            client_temp_id=client_temp_id,
        )
        if self.before_reply is not None:
            self.before_reply(message)
        return message

    async def get_messages(self, conversation_id, **_):
        self._check()
        return [dict(x) for x in self.messages.get(conversation_id, [])]

    async def get_conversations(self):
        self._check()
        return [dict(x) for x in self.conversations]

    async def mark_conversation_read(self, conversation_id):
        self.read_calls.append(conversation_id)
        if self.read_gate is not None:
            await self.read_gate.wait()
        self._check()
        return {"conversation_id": conversation_id, "modified_count": 1}

    async def create_conversation(self, other_user_id, job_id=None):
        conversation = {"id": "c_new", "participants": [ME, other_user_id], "job_id": job_id, "unread_count": 0}
        self.conversations.append(conversation)
        return dict(conversation)


def _incoming(conversation_id: str, message: dict) -> NewMessage:
    return NewMessage(
        channel=f"conversation:{conversation_id}",
        seq=message.get("seq"),
        conversation_id=conversation_id,
        message=message,
    )


@pytest.mark.asyncio
async def test_send_shows_pending_then_settles_to_server_copy():
    api = FakeMessagesApi()
    sync = ConversationSynchronizer(api, user_id=ME)
    seen_statuses = []
    sync.subscribe(lambda: seen_statuses.append([x["status"] for x in sync.messages("c1")]))

    sent = await sync.send("c1", "On it")

    assert seen_statuses[0] == [MessageStatus.PENDING]
    messages = sync.messages("c1")
    assert len(messages) == 1
    assert messages[0]["status"] == MessageStatus.SENT
    assert messages[0]["id"] == sent["id"] == "msg_c1_1"
    assert messages[0]["client_temp_id"].startswith("tmp_")
    assert sync.pending.pending_keys() == []


@pytest.mark.asyncio
async def test_failed_send_is_kept_and_can_be_resent():
    api = FakeMessagesApi()
    api.fail = True
    sync = ConversationSynchronizer(api, user_id=ME)

    with pytest.raises(TransportError):
        await sync.send("c1", "Hello?")

    failed = sync.failed_messages("c1")
    assert len(failed) == 1
    assert failed[0]["error"] == "TRANSPORT_UNAVAILABLE"
    temp_id = failed[0]["client_temp_id"]

    api.fail = False
    resent = await sync.resend("c1", temp_id)

    assert resent["client_temp_id"] == temp_id
    assert sync.failed_messages("c1") == []
    assert [x["status"] for x in sync.messages("c1")] == [MessageStatus.SENT]


@pytest.mark.asyncio
async def test_resend_rejects_unknown_entries():
    sync = ConversationSynchronizer(FakeMessagesApi(), user_id=ME)
    with pytest.raises(KeyError):
        await sync.resend("c1", "tmp_missing")


@pytest.mark.asyncio
async def test_push_arriving_before_ack_does_not_duplicate():
    api = FakeMessagesApi()
    sync = ConversationSynchronizer(api, user_id=ME)
    api.before_reply = lambda message: sync.apply_new_message(_incoming("c1", message))

    await sync.send("c1", "Racing the ack")

    messages = sync.messages("c1")
    assert len(messages) == 1
    assert messages[0]["status"] == MessageStatus.SENT


@pytest.mark.asyncio
async def test_refetch_after_gap_merges_without_duplicates():
    api = FakeMessagesApi()
    sync = ConversationSynchronizer(api, user_id=ME)
    await sync.send("c1", "first")
    api.add("c1", sender_id=THEM, content="missed while offline", created_at="2026-05-01T10:05:00+00:00")
    api.fail = True
    with pytest.raises(TransportError):
        await sync.send("c1", "will fail")
    api.fail = False

    await sync.refresh_messages("c1")

    messages = sync.messages("c1")
    assert [x["content"] for x in messages if x["status"] == MessageStatus.SENT] == ["first", "missed while offline"]
    assert [x["content"] for x in sync.failed_messages("c1")] == ["will fail"]
    assert len([x for x in messages if x.get("id") == "msg_c1_1"]) == 1


@pytest.mark.asyncio
async def test_messages_are_ordered_by_timestamp_then_seq():
    sync = ConversationSynchronizer(FakeMessagesApi(), user_id=ME)
    late = {"id": "m3", "sender_id": THEM, "seq": 3, "created_at": "2026-05-01T10:00:02+00:00", "content": "c"}
    tie_b = {"id": "m2", "sender_id": THEM, "seq": 2, "created_at": "2026-05-01T10:00:01+00:00", "content": "b"}
    tie_a = {"id": "m1", "sender_id": THEM, "seq": 1, "created_at": "2026-05-01T10:00:01+00:00", "content": "a"}

    for message in (late, tie_b, tie_a):
        sync.apply_new_message(_incoming("c1", message))

    assert [x["id"] for x in sync.messages("c1")] == ["m1", "m2", "m3"]


@pytest.mark.asyncio
async def test_incoming_messages_bump_unread_and_reorder_list():
    api = FakeMessagesApi()
    api.conversations = [
        {"id": "c1", "participants": [ME, THEM], "unread_count": 0, "last_message_at": "2026-05-01T09:00"},
        {"id": "c2", "participants": [ME, "company_2"], "unread_count": 0, "last_message_at": "2026-05-01T09:30"},
    ]
    sync = ConversationSynchronizer(api, user_id=ME)
    await sync.refresh_conversations()
    assert [x["id"] for x in sync.conversations] == ["c2", "c1"]

    sync.apply_new_message(
        _incoming("c1", {"id": "m1", "sender_id": THEM, "seq": 1, "created_at": "2026-05-01T10:00:00+00:00"})
    )

    assert [x["id"] for x in sync.conversations] == ["c1", "c2"]
    assert sync.unread_count("c1") == 1
    assert sync.apply_new_message(
        _incoming("c1", {"id": "m1", "sender_id": THEM, "seq": 1, "created_at": "2026-05-01T10:00:00+00:00"})
    ) is False
    assert sync.unread_count("c1") == 1


@pytest.mark.asyncio
async def test_open_conversation_subscribes_and_marks_read():
    api = FakeMessagesApi()
    api.conversations = [{"id": "c1", "participants": [ME, THEM], "unread_count": 2}]
    api.add("c1", sender_id=THEM, content="hi", created_at="2026-05-01T09:00:00+00:00")
    subscribed = []

    async def subscribe(conversation_id):
        subscribed.append(conversation_id)

    sync = ConversationSynchronizer(api, user_id=ME, subscribe=subscribe)
    await sync.refresh_conversations()
    await sync.open_conversation("c1")

    assert subscribed == ["c1"]
    assert api.read_calls == ["c1"]
    assert sync.unread_count("c1") == 0
    assert [x["content"] for x in sync.messages("c1")] == ["hi"]

    sync.apply_new_message(
        _incoming("c1", {"id": "m9", "sender_id": THEM, "seq": 9, "created_at": "2026-05-01T11:00:00+00:00"})
    )
    assert sync.unread_count("c1") == 0


@pytest.mark.asyncio
async def test_failed_mark_read_restores_unread_count():
    api = FakeMessagesApi()
    api.conversations = [{"id": "c1", "participants": [ME, THEM], "unread_count": 3}]
    sync = ConversationSynchronizer(api, user_id=ME)
    await sync.refresh_conversations()
    api.fail = True

    with pytest.raises(TransportError):
        await sync.mark_read("c1")

    assert sync.unread_count("c1") == 3


@pytest.mark.asyncio
async def test_failed_mark_read_keeps_messages_pushed_in_flight():
    api = FakeMessagesApi()
    api.conversations = [{"id": "c1", "participants": [ME, THEM], "unread_count": 3}]
    api.read_gate = asyncio.Event()
    sync = ConversationSynchronizer(api, user_id=ME)
    await sync.refresh_conversations()
    api.fail = True

    task = asyncio.create_task(sync.mark_read("c1"))
    await asyncio.sleep(0)
    assert sync.unread_count("c1") == 0
    sync.apply_new_message(
        _incoming("c1", {"id": "m4", "sender_id": THEM, "seq": 4, "created_at": "2026-05-01T10:00:00+00:00"})
    )
    assert sync.unread_count("c1") == 1

    api.read_gate.set()
    with pytest.raises(TransportError):
        await task

    assert sync.unread_count("c1") == 4


@pytest.mark.asyncio
async def test_unacknowledged_send_expires_to_failed():
    now = [0.0]
    api = FakeMessagesApi()
    api.gate = asyncio.Event()
    sync = ConversationSynchronizer(api, user_id=ME, pending_window_s=30, clock=lambda: now[0])

    task = asyncio.create_task(sync.send("c1", "slow network"))
    await asyncio.sleep(0)
    assert [x["status"] for x in sync.messages("c1")] == [MessageStatus.PENDING]

    now[0] = 10.0
    assert sync.expire_pending() == []
    now[0] = 31.0
    expired = sync.expire_pending()

    assert len(expired) == 1
    assert [x["status"] for x in sync.messages("c1")] == [MessageStatus.FAILED]
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_typing_indicators_ignore_self_and_clear_on_message():
    sync = ConversationSynchronizer(FakeMessagesApi(), user_id=ME)

    sync.apply_typing(UserTyping(channel="conversation:c1", seq=None, conversation_id="c1", user_id=ME))
    sync.apply_typing(UserTyping(channel="conversation:c1", seq=None, conversation_id="c1", user_id=THEM))
    assert sync.typing_users("c1") == frozenset({THEM})

    sync.apply_new_message(
        _incoming("c1", {"id": "m1", "sender_id": THEM, "seq": 1, "created_at": "2026-05-01T10:00:00+00:00"})
    )
    assert sync.typing_users("c1") == frozenset()

    sync.apply_typing(UserTyping(channel="conversation:c1", seq=None, conversation_id="c1", user_id=THEM))
    sync.apply_typing(UserStopTyping(channel="conversation:c1", seq=None, conversation_id="c1", user_id=THEM))
    assert sync.typing_users("c1") == frozenset()


@pytest.mark.asyncio
async def test_typing_debouncer_sends_start_once_and_stop_after_idle():
    sent = []

    async def send(event, conversation_id):
        sent.append((event, conversation_id))

    debouncer = TypingDebouncer(send, idle_s=0.03)
    for _ in range(3):
        await debouncer.keypress("c1")
        await asyncio.sleep(0.005)

    assert sent == [("typing", "c1")]
    assert debouncer.is_typing("c1")

    await asyncio.sleep(0.1)
    assert sent == [("typing", "c1"), ("stop_typing", "c1")]
    assert not debouncer.is_typing("c1")


@pytest.mark.asyncio
async def test_typing_stop_is_sent_when_message_goes_out():
    sent = []

    async def send(event, conversation_id):
        sent.append((event, conversation_id))

    sync = ConversationSynchronizer(FakeMessagesApi(), user_id=ME, send_frame=send, typing_idle_s=5)
    await sync.typing.keypress("c1")
    await sync.send("c1", "done typing")

    assert sent == [("typing", "c1"), ("stop_typing", "c1")]
    sync.typing.cancel_all()


@pytest.mark.asyncio
async def test_typing_signal_failures_are_swallowed():
    async def send(event, conversation_id):
        raise TransportError("push channel is not connected")

    debouncer = TypingDebouncer(send, idle_s=5)
    await debouncer.keypress("c1")
    await debouncer.stop("c1")
    assert not debouncer.is_typing("c1")


@pytest.mark.asyncio
async def test_start_conversation_registers_it():
    sync = ConversationSynchronizer(FakeMessagesApi(), user_id=ME)
    conversation = await sync.start_conversation(THEM, "job_1")

    assert conversation["job_id"] == "job_1"
    assert [x["id"] for x in sync.conversations] == ["c_new"]


@pytest.mark.asyncio
async def test_idle_stop_signal_failures_are_logged(caplog: pytest.LogCaptureFixture):
    async def send(event, conversation_id):
        if event == "stop_typing":
            raise RuntimeError("socket vanished")

    debouncer = TypingDebouncer(send, idle_s=0.01)
    with caplog.at_level("WARNING", logger="jobflow.client.conversations"):
        await debouncer.keypress("c1")
        await asyncio.sleep(0.05)

    assert debouncer._tasks == set()
    assert "typing_signal_failed" in caplog.text


@pytest.mark.asyncio
async def test_cancel_all_cancels_in_flight_stop_signals():
    release = asyncio.Event()
    sent = []

    async def send(event, conversation_id):
        sent.append(event)
        if event == "stop_typing":
            await release.wait()

    debouncer = TypingDebouncer(send, idle_s=0.01)
    await debouncer.keypress("c1")
    await asyncio.sleep(0.05)
    assert sent == ["typing", "stop_typing"]
    (task,) = debouncer._tasks

    debouncer.cancel_all()
    await asyncio.sleep(0.01)

    assert task.cancelled()
    assert debouncer._tasks == set()
