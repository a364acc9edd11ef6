"""Pydantic models shared by the chat core.

Wire-facing models use camelCase field names so that ``model_dump()`` output
can be sent to clients unchanged.
"""
import math
import threading
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field


# =============================================================================
# Clock
# =============================================================================


class MonotonicClock:
    """Wall-clock timestamps that strictly increase within the process.

    No two calls return the same value, so a timestamp identifies a
    position in a room's history and can serve as a paging cursor.
    """

    def __init__(self) -> None:
        self._last = 0.0
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            current = max(time.time(), math.nextafter(self._last, math.inf))
            self._last = current
            return current


clock = MonotonicClock()


# =============================================================================
# Presence
# =============================================================================


class PresenceRecord(BaseModel):
    """Presence of a single user identity.

    Attributes:
        userId: Identity this record belongs to.
        displayName: Name shown to other participants.
        connectionId: Live connection id, None while offline.
        online: Whether the user currently has a live connection.
        lastSeen: Timestamp of the last connect or disconnect.
    """
    userId: str
    displayName: str
    connectionId: Optional[str] = None
    online: bool = False
    lastSeen: float = Field(default_factory=clock.now)


# =============================================================================
# Rooms
# =============================================================================


class RoomKind(str, Enum):
    """Kind of chat room.

    Attributes:
        DIRECT: Implicit room derived from a pair of users.
        GROUP: Room created explicitly by a user.
    """
    DIRECT = "direct"
    GROUP = "group"


class MessageSummary(BaseModel):
    """Short summary of the last message posted in a room."""
    text: str
    senderName: str
    timestamp: float


class Room(BaseModel):
    """Room record owned by the room directory."""
    roomId: str
    name: str
    kind: RoomKind = RoomKind.GROUP
    createdBy: str
    createdAt: float = Field(default_factory=clock.now)
    participants: Set[str] = Field(default_factory=set)
    lastMessage: Optional[MessageSummary] = None
    lastActivity: float = 0.0


class ParticipantView(BaseModel):
    """Participant details joined from the presence registry."""
    userId: str
    displayName: Optional[str] = None
    online: bool = False


class RoomView(BaseModel):
    """Room as presented to clients, with participant details."""
    roomId: str
    name: str
    kind: RoomKind
    createdBy: str
    createdAt: float
    participants: List[ParticipantView]
    participantCount: int
    lastMessage: Optional[MessageSummary] = None
    lastActivity: float


# =============================================================================
# Messages
# =============================================================================


class MessageKind(str, Enum):
    """Kind of stored message."""
    TEXT = "text"


class Message(BaseModel):
    """Immutable chat message stored in the message log."""
    model_config = {"frozen": True}

    messageId: str = Field(default_factory=lambda: str(uuid.uuid4()))
    roomId: str
    senderId: str
    senderName: str
    body: str
    timestamp: float = Field(default_factory=clock.now)
    kind: MessageKind = MessageKind.TEXT


# =============================================================================
# Outbound deliveries
# =============================================================================


class OutboundEvent(str, Enum):
    """Events the core sends to connections."""
    CONNECTED_ACK = "connected_ack"
    ROOM_JOINED = "room_joined"
    ROOM_LEFT = "room_left"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    NEW_MESSAGE = "new_message"
    MESSAGE_ACK = "message_ack"
    TYPING_INDICATOR = "typing_indicator"
    PRESENCE_CHANGED = "presence_changed"
    ERROR = "error"


class Delivery(BaseModel):
    """A single outbound event addressed to one connection."""
    connectionId: str
    event: OutboundEvent
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict:
        return {"type": self.event.value, **self.payload}
