"""End-to-end WebSocket tests for the session room hub.

Each socket speaks {"event", "data"} JSON envelopes. On connect the server
sends ``users-online`` to the new socket and ``user-connected`` to everyone
else, so tests drain those before asserting on room traffic.
"""
import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import SESSION_ID


def send(ws, event, data):
    ws.send_json({"event": event, "data": data})


def receive_event(ws, event):
    """Read frames until ``event`` arrives; returns its data."""
    while True:
        frame = ws.receive_json()
        if frame["event"] == event:
            return frame["data"]


def flush(ws):
    """Wait until every frame sent so far on ``ws`` has been handled.

    Frames from one socket are processed in order, so the error reply to a
    bogus event means all earlier frames are done.
    """
    send(ws, "flush", None)
    assert receive_event(ws, "error")["event"] == "flush"


def roster_ids(data):
    return [p["identityId"] for p in data]


def test_missing_token_is_rejected(api_client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with api_client.websocket_connect("/ws"):
            pass
    assert exc.value.code == 1008


def test_invalid_token_is_rejected_without_presence(api_client, hub, token):
    with pytest.raises(WebSocketDisconnect) as exc:
        with api_client.websocket_connect("/ws?token=garbage"):
            pass
    assert exc.value.code == 1008

    with pytest.raises(WebSocketDisconnect):
        with api_client.websocket_connect(f"/ws?token={token('inactive')}"):
            pass
    assert hub.presence.list_online() == []


def test_connect_announces_presence(api_client, token):
    with api_client.websocket_connect(f"/ws?token={token('alice')}") as ws_a:
        online = receive_event(ws_a, "users-online")
        assert [u["id"] for u in online] == ["alice"]

        with api_client.websocket_connect(f"/ws?token={token('bob')}") as ws_b:
            assert receive_event(ws_a, "user-connected") == {
                "id": "bob", "name": "Bob", "role": "attendee",
            }
            assert {u["id"] for u in receive_event(ws_b, "users-online")} == {"alice", "bob"}

        assert receive_event(ws_a, "user-disconnected") == "bob"


def test_video_room_join_and_abrupt_disconnect(api_client, hub, token):
    with api_client.websocket_connect(f"/ws?token={token('alice')}") as ws_a:
        receive_event(ws_a, "users-online")
        send(ws_a, "join-video-room", SESSION_ID)
        assert roster_ids(receive_event(ws_a, "participants-updated")) == ["alice"]

        with api_client.websocket_connect(f"/ws?token={token('bob')}") as ws_b:
            receive_event(ws_b, "users-online")
            send(ws_b, "join-video-room", SESSION_ID)

            assert roster_ids(receive_event(ws_b, "participants-updated")) == ["alice", "bob"]
            assert roster_ids(receive_event(ws_a, "participants-updated")) == ["alice", "bob"]

            send(ws_a, "offer", {"sessionId": SESSION_ID, "to": "bob", "payload": {"sdp": "o"}})
            offer = receive_event(ws_b, "offer")
            assert offer["from"] == "alice"
            assert offer["payload"] == {"sdp": "o"}

        # bob's socket closed without leave-video-room
        assert roster_ids(receive_event(ws_a, "participants-updated")) == ["alice"]
        assert receive_event(ws_a, "user-left-video") == {"userId": "bob"}
        assert receive_event(ws_a, "user-disconnected") == "bob"

    assert hub.video_rooms.rosters == {}
    assert hub.presence.list_online() == []


def test_chat_round_trip_and_errors(api_client, token):
    with api_client.websocket_connect(f"/ws?token={token('alice')}") as ws_a, \
         api_client.websocket_connect(f"/ws?token={token('carol')}") as ws_c:
        send(ws_a, "join-session-chat", {"sessionId": SESSION_ID})
        send(ws_a, "send-message", {"sessionId": SESSION_ID, "message": "hi all"})
        msg = receive_event(ws_a, "new-message")
        assert msg["message"] == "hi all"
        assert msg["seq"] == 1

        send(ws_c, "send-message", {"sessionId": SESSION_ID, "message": "me too"})
        error = receive_event(ws_c, "error")
        assert error["code"] == "forbidden"

        ws_c.send_text("{not json")
        assert receive_event(ws_c, "error")["code"] == "invalid_payload"

        send(ws_c, "no-such-event", {})
        assert receive_event(ws_c, "error")["code"] == "unknown_event"


def test_binary_frame_is_rejected_without_closing(api_client, token):
    with api_client.websocket_connect(f"/ws?token={token('alice')}") as ws:
        ws.send_bytes(b"\x00\x01")
        error = receive_event(ws, "error")
        assert error["code"] == "invalid_payload"
        assert error["event"] is None

        send(ws, "join-session-chat", SESSION_ID)
        send(ws, "send-message", {"sessionId": SESSION_ID, "message": "still here"})
        assert receive_event(ws, "new-message")["message"] == "still here"


def test_rest_post_reaches_socket_subscribers(api_client, token, auth_headers):
    with api_client.websocket_connect(f"/ws?token={token('bob')}") as ws_b:
        send(ws_b, "join-qa-room", SESSION_ID)
        flush(ws_b)

        response = api_client.post(
            f"/api/qa/{SESSION_ID}/questions",
            json={"question": "Is this live?"},
            headers=auth_headers("alice"),
        )
        assert response.status_code == 201

        question = receive_event(ws_b, "new-question")
        assert question["question"] == "Is this live?"
        assert question["user"]["id"] == "alice"
