"""WebSocket tests for the /ws delivery channel.

Every client authenticates with ?token=<jwt> and must join its own room
before relaying events. The server confirms a join with a "joined" frame.
"""
import pytest
from starlette.websockets import WebSocketDisconnect

from tests.helpers import auth_headers, ws_url


def join(ws, user_id):
    ws.send_json({"event": "join", "data": {"userId": user_id}})
    frame = ws.receive_json()
    assert frame == {"event": "joined", "data": {"userId": user_id}}


def test_connection_without_token_is_refused(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws"):
            pass
    assert exc.value.code == 4401


def test_connection_with_bad_token_is_refused(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws?token=garbage"):
            pass
    assert exc.value.code == 4401


def test_two_tabs_of_same_user_both_receive(client, hub):
    with client.websocket_connect(ws_url("u1")) as tab1, \
         client.websocket_connect(ws_url("u1")) as tab2, \
         client.websocket_connect(ws_url("u2")) as peer:
        join(tab1, "u1")
        join(tab2, "u1")
        join(peer, "u2")
        assert hub.room_size("u1") == 2

        peer.send_json({
            "event": "send-message",
            "data": {
                "senderId": "u2",
                "receiverId": "u1",
                "content": "hello tabs",
                "conversationId": "c1",
                "messageId": "m1",
            },
        })

        ack = peer.receive_json()
        assert ack == {"event": "message-sent", "data": {"success": True, "messageId": "m1"}}
        first = tab1.receive_json()
        second = tab2.receive_json()
        assert first == second
        assert first["event"] == "receive-message"
        assert first["data"]["content"] == "hello tabs"
        assert first["data"]["_id"] == "m1"


def test_join_as_someone_else_is_rejected(client, hub):
    with client.websocket_connect(ws_url("u1")) as ws:
        ws.send_json({"event": "join", "data": {"userId": "u2"}})

        frame = ws.receive_json()

        assert frame["event"] == "error"
        assert "own room" in frame["data"]["detail"]
        assert hub.room_size("u2") == 0


def test_join_accepts_bare_user_id(client, hub):
    with client.websocket_connect(ws_url("u1")) as ws:
        ws.send_json({"event": "join", "data": "u1"})

        assert ws.receive_json()["event"] == "joined"
        assert hub.is_online("u1")


def test_events_before_join_are_rejected(client):
    with client.websocket_connect(ws_url("u1")) as ws:
        ws.send_json({"event": "typing", "data": {"senderId": "u1", "receiverId": "u2", "isTyping": True}})

        frame = ws.receive_json()

        assert frame["event"] == "error"


def test_spoofed_sender_is_rejected(client):
    with client.websocket_connect(ws_url("u1")) as ws:
        join(ws, "u1")
        ws.send_json({"event": "typing", "data": {"senderId": "u9", "receiverId": "u2", "isTyping": True}})

        assert ws.receive_json()["event"] == "error"


def test_malformed_frames_keep_connection_open(client):
    with client.websocket_connect(ws_url("u1")) as ws:
        ws.send_text("not json")
        assert ws.receive_json()["event"] == "error"

        ws.send_json({"event": "no-such-event", "data": {}})
        assert ws.receive_json()["event"] == "error"

        join(ws, "u1")
        ws.send_json({"event": "send-message", "data": {"senderId": "u1"}})
        assert ws.receive_json()["event"] == "error"


def test_binary_frame_gets_error_and_connection_stays_open(client):
    with client.websocket_connect(ws_url("u1")) as ws:
        ws.send_bytes(b'{"event": "join", "data": {"userId": "u1"}}')
        frame = ws.receive_json()
        assert frame == {"event": "error", "data": {"detail": "Frames must be JSON text"}}

        join(ws, "u1")


def test_typing_to_offline_user_is_dropped_without_replay(client, hub):
    with client.websocket_connect(ws_url("u1")) as sender:
        join(sender, "u1")
        sender.send_json({"event": "typing", "data": {"senderId": "u1", "receiverId": "u2", "isTyping": True}})
        # frames are handled in order, so this round trip means the typing event is done
        sender.send_json({"event": "ping", "data": {}})
        assert sender.receive_json()["event"] == "error"

        with client.websocket_connect(ws_url("u2")) as receiver:
            join(receiver, "u2")
            sender.send_json({"event": "typing", "data": {"senderId": "u1", "receiverId": "u2", "isTyping": False}})

            # only the event sent after joining arrives
            frame = receiver.receive_json()
            assert frame == {"event": "user-typing", "data": {"userId": "u1", "isTyping": False}}


def test_read_receipt_reaches_the_original_sender(client):
    with client.websocket_connect(ws_url("u1")) as writer, \
         client.websocket_connect(ws_url("u2")) as reader:
        join(writer, "u1")
        join(reader, "u2")

        reader.send_json({"event": "mark-read", "data": {"notifyUserId": "u1", "conversationId": "c1"}})
        assert writer.receive_json() == {"event": "messages-read", "data": {"conversationId": "c1"}}

        # legacy field name for the same target
        reader.send_json({"event": "mark-read", "data": {"senderId": "u1", "conversationId": "c2"}})
        assert writer.receive_json() == {"event": "messages-read", "data": {"conversationId": "c2"}}


def test_rest_send_is_pushed_to_connected_receiver(client):
    with client.websocket_connect(ws_url("u2")) as receiver:
        join(receiver, "u2")

        resp = client.post("/messages", json={"receiverId": "u2", "content": "over rest"}, headers=auth_headers("u1"))
        assert resp.status_code == 201
        stored = resp.json()["message"]

        frame = receiver.receive_json()
        assert frame["event"] == "receive-message"
        assert frame["data"]["_id"] == stored["_id"]
        assert frame["data"]["conversationId"] == stored["conversationId"]
        assert frame["data"]["content"] == "over rest"


def test_presence_requires_identity(client):
    assert client.get("/presence/u1").status_code == 401


def test_presence_follows_connections(client):
    headers = auth_headers("u2")
    assert client.get("/presence/u1", headers=headers).json() == {"userId": "u1", "online": False, "connections": 0}

    with client.websocket_connect(ws_url("u1")) as ws:
        join(ws, "u1")
        assert client.get("/presence/u1", headers=headers).json()["online"] is True

    assert client.get("/presence/u1", headers=headers).json()["online"] is False
