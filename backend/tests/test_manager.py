"""Tests for the WebSocket connection manager (the delivery transport)."""
import pytest

from app.chat.manager import ConnectionManager
from app.chat.schemas import Delivery, OutboundEvent


class FakeWebSocket:
    """Records frames; fails every send after ``fail_after`` successes."""

    def __init__(self, fail_after=None):
        self.accepted = False
        self.sent = []
        self.fail_after = fail_after

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise RuntimeError("socket closed")
        self.sent.append(message)


def message(connection_id, body):
    return Delivery(
        connectionId=connection_id,
        event=OutboundEvent.NEW_MESSAGE,
        payload={"body": body},
    )


class TestConnections:

    @pytest.mark.asyncio
    async def test_connect_accepts_and_assigns_id(self):
        manager = ConnectionManager()
        ws = FakeWebSocket()

        connection_id = await manager.connect(ws)

        assert ws.accepted
        assert connection_id
        assert manager.is_connected(connection_id)
        assert manager.active_connections[connection_id] is ws

    @pytest.mark.asyncio
    async def test_connection_ids_are_unique(self):
        manager = ConnectionManager()
        first = await manager.connect(FakeWebSocket())
        second = await manager.connect(FakeWebSocket())
        assert first != second

    @pytest.mark.asyncio
    async def test_disconnect(self):
        manager = ConnectionManager()
        connection_id = await manager.connect(FakeWebSocket())

        manager.disconnect(connection_id)
        manager.disconnect(connection_id)
        manager.disconnect("never-connected")

        assert not manager.is_connected(connection_id)


class TestDeliver:

    @pytest.mark.asyncio
    async def test_nothing_to_deliver(self):
        assert await ConnectionManager().deliver([]) == 0

    @pytest.mark.asyncio
    async def test_frames_sent_in_order(self):
        manager = ConnectionManager()
        ws = FakeWebSocket()
        connection_id = await manager.connect(ws)

        sent = await manager.deliver([message(connection_id, str(i)) for i in range(5)])

        assert sent == 5
        assert [frame["body"] for frame in ws.sent] == ["0", "1", "2", "3", "4"]
        assert ws.sent[0]["type"] == "new_message"

    @pytest.mark.asyncio
    async def test_partial_delivery(self):
        """A broken socket and a stale id do not stop the rest of a fanout."""
        manager = ConnectionManager()
        healthy = FakeWebSocket()
        broken = FakeWebSocket(fail_after=0)
        healthy_id = await manager.connect(healthy)
        broken_id = await manager.connect(broken)

        sent = await manager.deliver([
            message(broken_id, "a"),
            message(healthy_id, "a"),
            message("stale-connection", "a"),
            message(healthy_id, "b"),
            message(broken_id, "b"),
        ])

        assert sent == 2
        assert [frame["body"] for frame in healthy.sent] == ["a", "b"]
        assert broken.sent == []
        assert not manager.is_connected(broken_id)
        assert manager.is_connected(healthy_id)

    @pytest.mark.asyncio
    async def test_failure_mid_group_stops_that_connection(self):
        manager = ConnectionManager()
        flaky = FakeWebSocket(fail_after=1)
        flaky_id = await manager.connect(flaky)

        sent = await manager.deliver([message(flaky_id, body) for body in ("a", "b", "c")])

        assert sent == 1
        assert [frame["body"] for frame in flaky.sent] == ["a"]
        assert not manager.is_connected(flaky_id)
