"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time chat events
    - GET  /rooms: All rooms, most recently active first
    - POST /rooms: Create a group room
    - POST /rooms/direct: Open (or reuse) the direct room of two users
    - GET  /rooms/{room_id}: Room details with participant presence
    - GET  /rooms/{room_id}/messages: Recent, searched or paginated history

WebSocket Protocol:
    Every frame is a JSON object with a ``type`` field naming the event; the
    remaining fields are the event payload.

    Client -> server:
        - connect: {userId} or {displayName, contactInfo?}
        - join_room / leave_room: {roomId}
        - send_message: {roomId, body}
        - typing_start / typing_stop: {roomId}

    Server -> client:
        connected_ack, room_joined, room_left, participant_joined,
        participant_left, new_message, message_ack, typing_indicator,
        presence_changed, error {code, message}

    Closing the socket is the implicit ``disconnect`` event.
"""
import json
import logging
from typing import List, Optional

import anyio
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from app.config import get_config

from .dependencies import get_chat_core
from .directory import view
from .errors import ChatError, InvalidInput
from .fanout import InboundEvent
from .schemas import Delivery, OutboundEvent, RoomView

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Request models
# =============================================================================


class CreateRoomRequest(BaseModel):
    """Request body for creating a group room."""
    name: str = Field(..., description="Room name")
    userId: str = Field(..., description="Creator's user ID")


class DirectRoomRequest(BaseModel):
    """Request body for opening a direct room."""
    userA: str
    userB: str
    name: Optional[str] = None


# =============================================================================
# HTTP endpoints
# =============================================================================


@router.get("/rooms", response_model=List[RoomView])
async def list_rooms() -> List[RoomView]:
    """List every room, most recently active first."""
    core = get_chat_core()
    return [view(room, core.presence) for room in core.rooms.list()]


@router.post("/rooms", response_model=RoomView)
async def create_room(request: CreateRoomRequest) -> RoomView:
    """Create a group room with the requesting user as its first participant."""
    core = get_chat_core()
    room = core.rooms.create_room(request.name, request.userId)
    return view(room, core.presence)


@router.post("/rooms/direct", response_model=RoomView)
async def open_direct_room(request: DirectRoomRequest) -> RoomView:
    """Return the direct room of two users, creating it on first request.

    The room id is derived from the unordered pair, so repeated requests in
    either order return the same room.
    """
    core = get_chat_core()
    room = core.rooms.get_or_create_direct_room(request.userA, request.userB, request.name)
    return view(room, core.presence)


@router.get("/rooms/{room_id}", response_model=RoomView)
async def get_room(room_id: str) -> RoomView:
    core = get_chat_core()
    return view(core.rooms.get(room_id), core.presence)


@router.get("/rooms/{room_id}/messages")
async def get_messages(
    room_id: str,
    limit: Optional[int] = Query(None, ge=0, description="Number of newest messages to return"),
    q: Optional[str] = Query(None, description="Case-insensitive search in body or sender name"),
    before: Optional[float] = Query(None, description="Timestamp cursor (messages before this time)"),
) -> dict:
    """Get message history for a room.

    Args:
        room_id: The room ID.
        limit: Maximum number of messages (capped by ``chat.max_page_size``).
        q: Search term; when given, all matching messages are returned.
        before: Unix timestamp cursor for lazy loading older messages.

    Returns:
        JSON with a messages array (oldest first) and a hasMore flag.

    Example:
        GET /rooms/abc123/messages?limit=50
        GET /rooms/abc123/messages?before=1707321600.123&limit=50
        GET /rooms/abc123/messages?q=deploy
    """
    core = get_chat_core()
    core.rooms.get(room_id)

    if q is not None:
        messages = core.messages.search(room_id, q)
        return {"messages": [msg.model_dump(mode="json") for msg in messages], "hasMore": False}

    max_page = get_config().chat.max_page_size
    page_size = min(limit if limit is not None else max_page, max_page)
    messages = core.messages.list_before(room_id, before, page_size)

    has_more = False
    if messages:
        has_more = bool(core.messages.list_before(room_id, messages[0].timestamp, 1))

    return {"messages": [msg.model_dump(mode="json") for msg in messages], "hasMore": has_more}


# =============================================================================
# WebSocket endpoint
# =============================================================================


def _parse_frame(text: str):
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        raise InvalidInput("Frame is not valid JSON")
    if not isinstance(data, dict):
        raise InvalidInput("Frame must be a JSON object")
    event = data.pop("type", None)
    if not isinstance(event, str) or not event:
        raise InvalidInput("Frame type is required")
    return event, data


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint driving one connection through the fanout router.

    Protocol Flow:
        1. Client connects; the backend assigns a connection id.
        2. Client sends {type: "connect", ...identity}
           -> Server sends: {type: "connected_ack", userId, rooms, friends}
           -> Contacts receive: {type: "presence_changed", online: true}
        3. Client sends join_room / send_message / typing / leave_room events.
        4. On disconnect contacts receive {type: "presence_changed", online: false}.
    """
    core = get_chat_core()
    connection_id = await core.transport.connect(websocket)
    core.fanout.open(connection_id)

    try:
        while True:
            text = await websocket.receive_text()
            try:
                event, payload = _parse_frame(text)
            except ChatError as exc:
                await core.transport.deliver([Delivery(
                    connectionId=connection_id,
                    event=OutboundEvent.ERROR,
                    payload=exc.to_payload(),
                )])
                continue

            # Disconnect is implicit; a client asking for it just closes.
            if event == InboundEvent.DISCONNECT.value:
                await websocket.close()
                break

            logger.debug("[WS] %s received: type=%s", connection_id, event)
            deliveries = await core.fanout.dispatch(connection_id, event, payload)
            await core.transport.deliver(deliveries)

    except WebSocketDisconnect:
        logger.info(f"[WS] Connection {connection_id} closed by client")
    finally:
        # The host may cancel this task once the socket is gone; the offline
        # notices must still go out.
        with anyio.CancelScope(shield=True):
            core.transport.disconnect(connection_id)
            deliveries = await core.fanout.dispatch(connection_id, InboundEvent.DISCONNECT.value)
            await core.transport.deliver(deliveries)
