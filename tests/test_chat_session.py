"""Tests for the client-side chat session controller."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from realtime_chat.client.channel import HubChannel
from realtime_chat.client.session import ChatSessionController
from realtime_chat.errors import ChatError, SendError, ValidationError

CONVO = "c1"
BASE = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds):
    return (BASE + timedelta(seconds=seconds)).isoformat()


class FakeApi:
    """In-memory stand-in for HttpChatApi with offset pagination."""

    def __init__(self):
        self.conversation = {"_id": CONVO, "participants": ["me", "peer"], "unreadCount": {"me": 0, "peer": 0}}
        self.store = []
        self.gate = None
        self.fail_send = False
        self.read_calls = 0
        self.page_calls = []

    def add(self, sender, receiver, content, created_at, client_message_id=None):
        message = {
            "_id": f"m{len(self.store):03d}",
            "conversationId": CONVO,
            "senderId": sender,
            "receiverId": receiver,
            "content": content,
            "read": False,
            "createdAt": created_at,
            "clientMessageId": client_message_id,
        }
        self.store.append(message)
        return message

    async def get_conversation(self, conversation_id, page=1, limit=20):
        self.page_calls.append(page)
        ordered = sorted(self.store, key=lambda m: (m["createdAt"], m["_id"]))
        start = (page - 1) * limit
        return {
            "conversation": dict(self.conversation),
            "messages": [dict(m) for m in ordered[start:start + limit]],
            "pagination": {
                "page": page,
                "limit": limit,
                "totalMessages": len(ordered),
                "hasMore": page * limit < len(ordered),
            },
        }

    async def send_message(self, receiver_id, content, conversation_id=None, client_message_id=None):
        if self.fail_send:
            raise ChatError("Failed to send message")
        message = self.add("me", receiver_id, content, datetime.now(timezone.utc).isoformat(), client_message_id)
        if self.gate is not None:
            await self.gate.wait()
        return dict(message)

    async def mark_read(self, conversation_id):
        self.read_calls += 1
        return 0


class RecordingSocket:

    def __init__(self):
        self.frames = []

    async def send_json(self, frame):
        self.frames.append(frame)

    def events(self, name):
        return [f["data"] for f in self.frames if f["event"] == name]


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def socket():
    return RecordingSocket()


@pytest.fixture
def channel(socket):
    return HubChannel(socket.send_json)


@pytest.fixture
def controller(api, channel):
    return ChatSessionController(CONVO, "me", api, channel, page_limit=20)


def contents(ctrl):
    return [m["content"] for m in ctrl.messages]


def incoming(message_id, content, seconds, sender="peer", conversation_id=CONVO, **extra):
    return {
        "event": "receive-message",
        "data": {
            "_id": message_id,
            "messageId": message_id,
            "conversationId": conversation_id,
            "senderId": sender,
            "receiverId": "me" if sender == "peer" else "peer",
            "content": content,
            "read": False,
            "createdAt": at(seconds),
            **extra,
        },
    }


@pytest.mark.asyncio
async def test_open_loads_history_and_notifies_peer(controller, api, socket):
    api.add("peer", "me", "hello", at(1))
    api.add("me", "peer", "hi back", at(2))

    await controller.open()

    assert contents(controller) == ["hello", "hi back"]
    assert controller.peer_id == "peer"
    assert controller.has_more is False
    assert socket.events("mark-read") == [{"notifyUserId": "peer", "conversationId": CONVO}]


@pytest.mark.asyncio
async def test_optimistic_send_swaps_temp_id_for_server_id(controller, api, socket):
    await controller.open()
    api.gate = asyncio.Event()

    task = asyncio.create_task(controller.optimistic_send("  ping  "))
    await asyncio.sleep(0)

    (provisional,) = controller.messages
    assert provisional["_id"].startswith("temp-")
    assert provisional["pending"] is True
    assert provisional["content"] == "ping"
    assert provisional["read"] is False

    api.gate.set()
    stored = await task

    (final,) = controller.messages
    assert final["_id"] == stored["_id"] == "m000"
    assert final["pending"] is False
    relayed = socket.events("send-message")
    assert len(relayed) == 1
    assert relayed[0]["messageId"] == "m000"
    assert relayed[0]["receiverId"] == "peer"
    assert relayed[0]["senderId"] == "me"


@pytest.mark.asyncio
async def test_failed_send_rolls_back_provisional_entry(controller, api, socket):
    api.add("peer", "me", "hello", at(1))
    await controller.open()
    api.fail_send = True

    with pytest.raises(SendError):
        await controller.optimistic_send("will fail")

    assert contents(controller) == ["hello"]
    assert socket.events("send-message") == []


@pytest.mark.asyncio
async def test_blank_send_is_rejected_locally(controller, api):
    await controller.open()

    with pytest.raises(ValidationError):
        await controller.optimistic_send("   ")

    assert controller.messages == []
    assert api.store == []


@pytest.mark.asyncio
async def test_history_fetched_during_pending_send_does_not_duplicate(controller, api):
    api.add("peer", "me", "earlier", at(1))
    await controller.open()
    api.gate = asyncio.Event()

    task = asyncio.create_task(controller.optimistic_send("racing"))
    await asyncio.sleep(0)
    temp_position = [m["content"] for m in controller.messages].index("racing")

    # the stored record (with our clientMessageId) shows up in a reload first
    await controller.load_page(1)
    assert contents(controller) == ["earlier", "racing"]
    assert controller.messages[temp_position]["_id"] == "m001"

    api.gate.set()
    await task

    assert contents(controller) == ["earlier", "racing"]
    assert [m["_id"] for m in controller.messages] == ["m000", "m001"]


@pytest.mark.asyncio
async def test_duplicate_hub_events_are_incorporated_once(controller, api, channel, socket):
    await controller.open()
    socket.frames.clear()

    frame = incoming("m100", "from peer", 5)
    await channel.dispatch(frame)
    await channel.dispatch(frame)

    assert contents(controller) == ["from peer"]
    assert api.read_calls == 1
    assert socket.events("mark-read") == [{"notifyUserId": "peer", "conversationId": CONVO}]
    assert controller.messages[0]["read"] is True


@pytest.mark.asyncio
async def test_hub_event_then_history_page_does_not_duplicate(controller, api, channel):
    await controller.open()
    stored = api.add("peer", "me", "both paths", at(3))

    await channel.dispatch(incoming(stored["_id"], "both paths", 3))
    await controller.load_page(1)

    assert contents(controller) == ["both paths"]


@pytest.mark.asyncio
async def test_out_of_order_events_are_inserted_in_time_order(controller, api, channel):
    api.add("peer", "me", "first", at(10))
    api.add("peer", "me", "third", at(30))
    await controller.open()

    await channel.dispatch(incoming("m200", "second", 20))
    await channel.dispatch(incoming("m201", "zeroth", 0))

    assert contents(controller) == ["zeroth", "first", "second", "third"]
    stamps = [m["createdAt"] for m in controller.messages]
    assert stamps == sorted(stamps)


@pytest.mark.asyncio
async def test_events_for_other_conversations_are_ignored(controller, api, channel):
    await controller.open()

    await channel.dispatch(incoming("m300", "elsewhere", 1, conversation_id="c2"))

    assert controller.messages == []
    assert api.read_calls == 0


@pytest.mark.asyncio
async def test_own_messages_from_hub_do_not_trigger_receipts(controller, api, channel, socket):
    await controller.open()
    socket.frames.clear()

    await channel.dispatch(incoming("m400", "echo of mine", 1, sender="me"))

    assert contents(controller) == ["echo of mine"]
    assert api.read_calls == 0
    assert socket.events("mark-read") == []


@pytest.mark.asyncio
async def test_close_stops_incorporating_events(controller, channel):
    await controller.open()
    assert channel.handler_count("receive-message") == 1

    controller.close()
    await channel.dispatch(incoming("m500", "too late", 1))

    assert channel.handler_count("receive-message") == 0
    assert controller.messages == []
    assert controller.is_open is False


@pytest.mark.asyncio
async def test_load_older_merges_pages(api, channel):
    for i in range(5):
        api.add("peer", "me", f"m{i}", at(i))
    ctrl = ChatSessionController(CONVO, "me", api, channel, page_limit=2)

    await ctrl.open()
    assert contents(ctrl) == ["m0", "m1"]
    assert ctrl.has_more is True

    await ctrl.load_older()
    await ctrl.load_older()
    assert contents(ctrl) == ["m0", "m1", "m2", "m3", "m4"]
    assert ctrl.has_more is False

    assert await ctrl.load_older() == []
    assert api.page_calls == [1, 2, 3]


@pytest.mark.asyncio
async def test_reloading_first_page_keeps_live_messages(api, channel):
    for i in range(3):
        api.add("peer", "me", f"old{i}", at(i))
    ctrl = ChatSessionController(CONVO, "me", api, channel, page_limit=2)
    await ctrl.open()

    await channel.dispatch(incoming("m900", "live", 100))
    await ctrl.load_page(1)

    assert contents(ctrl) == ["old0", "old1", "live"]


@pytest.mark.asyncio
async def test_read_receipt_flags_own_messages(controller, api, channel):
    api.add("me", "peer", "mine", at(1))
    api.add("peer", "me", "theirs", at(2))
    await controller.open()

    await channel.dispatch({"event": "messages-read", "data": {"conversationId": CONVO}})

    flags = {m["content"]: m["read"] for m in controller.messages}
    assert flags == {"mine": True, "theirs": False}


@pytest.mark.asyncio
async def test_typing_indicator_tracks_peer_only(controller, channel, socket):
    await controller.open()

    await channel.dispatch({"event": "user-typing", "data": {"userId": "stranger", "isTyping": True}})
    assert controller.peer_typing is False
    await channel.dispatch({"event": "user-typing", "data": {"userId": "peer", "isTyping": True}})
    assert controller.peer_typing is True

    await controller.set_typing(True)
    assert socket.events("typing") == [{"senderId": "me", "receiverId": "peer", "isTyping": True}]
