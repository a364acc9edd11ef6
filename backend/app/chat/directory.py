"""Room directory: room records, membership and activity ordering.

Rooms are either ``group`` rooms created explicitly by a user or ``direct``
rooms derived from an unordered pair of user ids. Direct room ids are
canonical (``direct_<a>_<b>`` with the pair sorted), which makes
``get_or_create_direct_room`` idempotent and commutative.

Rooms are never deleted here. Callers always receive copies; the stored
records are only mutated under the room's lock.
"""
import logging
import threading
import uuid
from typing import Dict, List, Optional

from .errors import Conflict, InvalidInput, NotAuthorized, NotFound
from .presence import PresenceRegistry
from .schemas import MessageSummary, ParticipantView, Room, RoomKind, RoomView, clock

logger = logging.getLogger(__name__)

DIRECT_ROOM_PREFIX = "direct_"


def direct_room_id(user_a: str, user_b: str) -> str:
    """Canonical room id for the direct chat between two users."""
    first, second = sorted((user_a, user_b))
    return f"{DIRECT_ROOM_PREFIX}{first}_{second}"


def _activity_key(room: Room):
    return (room.lastActivity, room.createdAt, room.roomId)


class RoomDirectory:
    """Owns every room record and its participant set.

    Thread Safety:
        ``_lock`` guards the room table; each room also has its own lock so
        membership changes on different rooms do not contend.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Room] = {}
        self._room_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Creation
    # =========================================================================

    def create_room(self, name: str, creator_id: str) -> Room:
        """Create a group room with the creator as its only participant.

        Raises:
            InvalidInput: If the name or creator is empty.
        """
        name = (name or "").strip()
        if not name:
            raise InvalidInput("Room name is required")
        if not creator_id:
            raise InvalidInput("Creator user ID is required")

        now = clock.now()
        room = Room(
            roomId=str(uuid.uuid4()),
            name=name,
            kind=RoomKind.GROUP,
            createdBy=creator_id,
            createdAt=now,
            participants={creator_id},
            lastActivity=now,
        )
        with self._lock:
            self._rooms[room.roomId] = room
            self._room_locks[room.roomId] = threading.Lock()
        logger.info(f"[Rooms] Room '{name}' ({room.roomId}) created by {creator_id}")
        return room.model_copy(deep=True)

    def get_or_create_direct_room(
        self, user_a: str, user_b: str, name: Optional[str] = None
    ) -> Room:
        """Return the direct room for a pair of users, creating it if needed.

        The argument order does not matter: ``(a, b)`` and ``(b, a)`` resolve
        to the same room.

        Raises:
            InvalidInput: If either id is empty or both ids are the same.
        """
        if not user_a or not user_b:
            raise InvalidInput("Both user IDs are required for a direct room")
        if user_a == user_b:
            raise InvalidInput("Cannot open a direct room with yourself")

        room_id = direct_room_id(user_a, user_b)
        with self._lock:
            existing = self._rooms.get(room_id)
            if existing is not None:
                return existing.model_copy(deep=True)

            now = clock.now()
            room = Room(
                roomId=room_id,
                name=(name or "").strip() or f"{user_a} & {user_b}",
                kind=RoomKind.DIRECT,
                createdBy=user_a,
                createdAt=now,
                participants={user_a, user_b},
                lastActivity=now,
            )
            self._rooms[room_id] = room
            self._room_locks[room_id] = threading.Lock()
        logger.info(f"[Rooms] Direct room {room_id} created")
        return room.model_copy(deep=True)

    # =========================================================================
    # Lookup
    # =========================================================================

    def _locked(self, room_id: str):
        with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                raise NotFound(f"Room {room_id} not found")
            return room, self._room_locks[room_id]

    def get(self, room_id: str) -> Room:
        room, lock = self._locked(room_id)
        with lock:
            return room.model_copy(deep=True)

    def exists(self, room_id: str) -> bool:
        with self._lock:
            return room_id in self._rooms

    def is_participant(self, room_id: str, user_id: str) -> bool:
        with self._lock:
            room = self._rooms.get(room_id)
            lock = self._room_locks.get(room_id)
        if room is None:
            return False
        with lock:
            return user_id in room.participants

    def participants_of(self, room_id: str) -> List[str]:
        room, lock = self._locked(room_id)
        with lock:
            return sorted(room.participants)

    # =========================================================================
    # Membership
    # =========================================================================

    def join(self, room_id: str, user_id: str) -> Room:
        """Add a user to a room. Joining twice is a no-op.

        Raises:
            NotFound: If the room does not exist.
            NotAuthorized: If the room is a direct room of another pair.
        """
        if not user_id:
            raise InvalidInput("User ID is required")
        room, lock = self._locked(room_id)
        with lock:
            if user_id not in room.participants:
                if room.kind == RoomKind.DIRECT:
                    raise NotAuthorized(f"Room {room_id} is a direct room")
                room.participants.add(user_id)
                logger.info(f"[Rooms] User {user_id} joined room {room_id}")
            return room.model_copy(deep=True)

    def leave(self, room_id: str, user_id: str) -> Room:
        """Remove a user from a room. Leaving as a non-member is a no-op.

        Raises:
            NotFound: If the room does not exist.
            Conflict: If the user is the last remaining participant.
        """
        room, lock = self._locked(room_id)
        with lock:
            if user_id in room.participants:
                if len(room.participants) == 1:
                    raise Conflict("The last participant cannot leave the room")
                room.participants.discard(user_id)
                logger.info(f"[Rooms] User {user_id} left room {room_id}")
            return room.model_copy(deep=True)

    def record_activity(self, room_id: str, summary: MessageSummary, timestamp: float) -> Room:
        """Store the last message summary and bump the activity timestamp."""
        room, lock = self._locked(room_id)
        with lock:
            room.lastMessage = summary
            room.lastActivity = max(room.lastActivity, timestamp)
            return room.model_copy(deep=True)

    # =========================================================================
    # Listing
    # =========================================================================

    def _snapshot(self) -> List[Room]:
        with self._lock:
            pairs = [(room, self._room_locks[rid]) for rid, room in self._rooms.items()]
        rooms = []
        for room, lock in pairs:
            with lock:
                rooms.append(room.model_copy(deep=True))
        return rooms

    def list(self) -> List[Room]:
        """All rooms, most recently active first."""
        return sorted(self._snapshot(), key=_activity_key, reverse=True)

    def list_for_user(self, user_id: str) -> List[Room]:
        """Rooms containing ``user_id``, most recently active first."""
        rooms = [room for room in self._snapshot() if user_id in room.participants]
        return sorted(rooms, key=_activity_key, reverse=True)

    def rooms_of(self, user_id: str) -> List[str]:
        return [room.roomId for room in self.list_for_user(user_id)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._rooms)


def view(room: Room, presence: PresenceRegistry) -> RoomView:
    """Join a room record with presence data for display.

    Participants that never connected have no presence record; they are
    listed offline without a display name.
    """
    participants = []
    for user_id in sorted(room.participants):
        record = presence.get(user_id)
        participants.append(ParticipantView(
            userId=user_id,
            displayName=record.displayName if record else None,
            online=record.online if record else False,
        ))
    return RoomView(
        roomId=room.roomId,
        name=room.name,
        kind=room.kind,
        createdBy=room.createdBy,
        createdAt=room.createdAt,
        participants=participants,
        participantCount=len(room.participants),
        lastMessage=room.lastMessage,
        lastActivity=room.lastActivity,
    )
