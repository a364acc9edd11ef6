"""Tests for the WebSocket chat endpoint with multiple clients.

Every client identifies itself with a ``connect`` frame first; the backend
answers with ``connected_ack`` carrying the server-tracked userId. All later
events use that identity, never one claimed by the client.
"""
import asyncio

from fastapi.testclient import TestClient

from app.chat.dependencies import build_chat_core, set_chat_core
from app.identity.service import InMemoryIdentityStore
from app.main import app


client = TestClient(app)


def connect_as(ws, display_name):
    """Identify a socket and return its connected_ack frame."""
    ws.send_json({"type": "connect", "displayName": display_name})
    ack = ws.receive_json()
    assert ack["type"] == "connected_ack"
    assert ack["displayName"] == display_name
    assert ack["userId"]
    return ack


def create_room(name, user_id):
    response = client.post("/rooms", json={"name": name, "userId": user_id})
    assert response.status_code == 200
    return response.json()


def test_connect_acknowledges_identity():
    with client.websocket_connect("/ws/chat") as ws:
        ack = connect_as(ws, "Alice")
        assert ack["rooms"] == []
        assert ack["friends"] == []

    response = client.get(f"/users/{ack['userId']}")
    assert response.status_code == 200
    assert response.json()["displayName"] == "Alice"


def test_connect_with_registered_user():
    user = client.post("/users", json={"displayName": "Bob", "contactInfo": "bob@example.com"}).json()

    with client.websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "connect", "userId": user["userId"]})
        ack = ws.receive_json()
        assert ack["type"] == "connected_ack"
        assert ack["userId"] == user["userId"]
        assert ack["contactInfo"] == "bob@example.com"


def test_two_clients_same_room():
    """Alice creates a room, both join and both receive Alice's message."""
    with client.websocket_connect("/ws/chat") as ws1, \
         client.websocket_connect("/ws/chat") as ws2:

        alice = connect_as(ws1, "Alice")
        bob = connect_as(ws2, "Bob")
        room = create_room("general", alice["userId"])
        room_id = room["roomId"]

        ws1.send_json({"type": "join_room", "roomId": room_id})
        joined = ws1.receive_json()
        assert joined["type"] == "room_joined"
        assert joined["room"]["roomId"] == room_id
        assert joined["messages"] == []

        ws2.send_json({"type": "join_room", "roomId": room_id})
        joined = ws2.receive_json()
        assert joined["type"] == "room_joined"
        assert joined["room"]["participantCount"] == 2

        notice = ws1.receive_json()
        assert notice["type"] == "participant_joined"
        assert notice["userId"] == bob["userId"]
        assert notice["displayName"] == "Bob"

        ws1.send_json({"type": "send_message", "roomId": room_id, "body": "hi"})

        echoed = ws1.receive_json()
        ack = ws1.receive_json()
        received = ws2.receive_json()

        assert echoed["type"] == "new_message"
        assert ack["type"] == "message_ack"
        assert ack["messageId"] == echoed["messageId"]
        assert received == echoed
        assert received["body"] == "hi"
        assert received["senderId"] == alice["userId"]
        assert received["senderName"] == "Alice"
        assert received["roomId"] == room_id

    history = client.get(f"/rooms/{room_id}/messages").json()
    assert [m["body"] for m in history["messages"]] == ["hi"]


def test_join_snapshot_contains_history():
    with client.websocket_connect("/ws/chat") as ws1:
        alice = connect_as(ws1, "Alice")
        room_id = create_room("general", alice["userId"])["roomId"]

        for body in ("first", "second"):
            ws1.send_json({"type": "send_message", "roomId": room_id, "body": body})
            assert ws1.receive_json()["type"] == "new_message"
            assert ws1.receive_json()["type"] == "message_ack"

        with client.websocket_connect("/ws/chat") as ws2:
            connect_as(ws2, "Bob")
            ws2.send_json({"type": "join_room", "roomId": room_id})
            joined = ws2.receive_json()

            assert joined["type"] == "room_joined"
            assert [m["body"] for m in joined["messages"]] == ["first", "second"]


def test_typing_indicator_reaches_other_participants():
    with client.websocket_connect("/ws/chat") as ws1, \
         client.websocket_connect("/ws/chat") as ws2:

        alice = connect_as(ws1, "Alice")
        connect_as(ws2, "Bob")
        room_id = create_room("general", alice["userId"])["roomId"]
        ws2.send_json({"type": "join_room", "roomId": room_id})
        assert ws2.receive_json()["type"] == "room_joined"
        assert ws1.receive_json()["type"] == "participant_joined"

        ws1.send_json({"type": "typing_start", "roomId": room_id})
        indicator = ws2.receive_json()

        assert indicator["type"] == "typing_indicator"
        assert indicator["userId"] == alice["userId"]
        assert indicator["isTyping"] is True


def test_friend_sees_presence_changes():
    alice = client.post("/users", json={"displayName": "Alice"}).json()
    bob = client.post("/users", json={"displayName": "Bob"}).json()
    assert client.post(f"/users/{alice['userId']}/friends/{bob['userId']}").status_code == 201

    with client.websocket_connect("/ws/chat") as ws_bob:
        ws_bob.send_json({"type": "connect", "userId": bob["userId"]})
        ack = ws_bob.receive_json()
        assert ack["friends"] == [alice["userId"]]

        with client.websocket_connect("/ws/chat") as ws_alice:
            ws_alice.send_json({"type": "connect", "userId": alice["userId"]})
            assert ws_alice.receive_json()["type"] == "connected_ack"

            online = ws_bob.receive_json()
            assert online["type"] == "presence_changed"
            assert online["userId"] == alice["userId"]
            assert online["online"] is True

        offline = ws_bob.receive_json()
        assert offline["type"] == "presence_changed"
        assert offline["userId"] == alice["userId"]
        assert offline["online"] is False


class SlowFriendsStore(InMemoryIdentityStore):
    """Friend lookups that suspend, like a remote collaborator would."""

    async def friends_of(self, user_id):
        await asyncio.sleep(0.05)
        return await super().friends_of(user_id)


def test_offline_notice_survives_socket_teardown():
    """The disconnect cleanup still notifies friends when the host cancels the handler."""
    set_chat_core(build_chat_core(identity=SlowFriendsStore()))
    alice = client.post("/users", json={"displayName": "Alice"}).json()
    bob = client.post("/users", json={"displayName": "Bob"}).json()
    client.post(f"/users/{alice['userId']}/friends/{bob['userId']}")

    with client.websocket_connect("/ws/chat") as ws_bob:
        ws_bob.send_json({"type": "connect", "userId": bob["userId"]})
        assert ws_bob.receive_json()["type"] == "connected_ack"

        with client.websocket_connect("/ws/chat") as ws_alice:
            ws_alice.send_json({"type": "connect", "userId": alice["userId"]})
            assert ws_alice.receive_json()["type"] == "connected_ack"
            assert ws_bob.receive_json()["online"] is True

        offline = ws_bob.receive_json()
        assert offline["type"] == "presence_changed"
        assert offline["userId"] == alice["userId"]
        assert offline["online"] is False


class TestErrors:

    def test_invalid_json(self):
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_text("not json")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "invalid_input"

    def test_frame_without_type(self):
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"roomId": "general"})
            assert ws.receive_json()["code"] == "invalid_input"

    def test_events_before_connect(self):
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "join_room", "roomId": "general"})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "not_authorized"

            # The connection stays usable after an error.
            ack = connect_as(ws, "Alice")
            assert ack["type"] == "connected_ack"

    def test_send_without_membership(self):
        with client.websocket_connect("/ws/chat") as ws1, \
             client.websocket_connect("/ws/chat") as ws2:

            alice = connect_as(ws1, "Alice")
            connect_as(ws2, "Mallory")
            room_id = create_room("general", alice["userId"])["roomId"]

            ws2.send_json({"type": "send_message", "roomId": room_id, "body": "spam"})
            error = ws2.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "not_in_room"

        assert client.get(f"/rooms/{room_id}/messages").json()["messages"] == []

    def test_unknown_room(self):
        with client.websocket_connect("/ws/chat") as ws:
            connect_as(ws, "Alice")
            ws.send_json({"type": "join_room", "roomId": "missing"})
            assert ws.receive_json()["code"] == "not_found"
