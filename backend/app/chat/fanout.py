"""Fanout router: the per-connection chat state machine.

Each transport connection moves through three states::

    UNAUTHENTICATED --connect--> ACTIVE --disconnect--> CLOSED

``dispatch()`` validates an inbound event against the presence registry and
room directory, mutates the stores and returns the list of deliveries the
transport must send. The router never touches sockets itself, so it can be
driven directly from tests.

Handlers that only touch in-memory stores are plain functions. ``connect``
and ``disconnect`` read the identity collaborator and are coroutines; those
reads are the only suspension points.

Error Handling:
    Every ``ChatError`` raised while handling an event becomes a single
    ``error`` delivery addressed to the originating connection. Nothing is
    raised to the transport and other connections are unaffected.

Ordering:
    Messages in one room are delivered in message log append order.
    Nothing is promised across rooms.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from app.identity.service import IdentityStore

from .directory import RoomDirectory, view
from .errors import ChatError, InvalidInput, NotAuthorized, NotInRoom, Unavailable
from .history import MessageLog
from .presence import PresenceRegistry
from .schemas import Delivery, MessageSummary, OutboundEvent

logger = logging.getLogger(__name__)

# Number of recent messages included in a room_joined snapshot
DEFAULT_SNAPSHOT_SIZE = 50

# Seconds to wait for an identity collaborator call
DEFAULT_LOOKUP_TIMEOUT = 5.0


class ConnectionState(str, Enum):
    """Lifecycle state of a single connection."""
    UNAUTHENTICATED = "unauthenticated"
    ACTIVE = "active"
    CLOSED = "closed"


class InboundEvent(str, Enum):
    """Events clients send to the core."""
    CONNECT = "connect"
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    SEND_MESSAGE = "send_message"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    DISCONNECT = "disconnect"


@dataclass
class Session:
    """Server-side view of one connection."""
    connection_id: str
    state: ConnectionState = ConnectionState.UNAUTHENTICATED
    user_id: Optional[str] = None
    display_name: Optional[str] = None


class FanoutRouter:
    """Routes inbound client events to state changes and outbound deliveries.

    Args:
        presence: Presence registry shared by all connections.
        rooms: Room directory.
        messages: Message log.
        identity: Identity collaborator.
        snapshot_size: Recent messages sent with ``room_joined``.
        lookup_timeout: Seconds before an identity call is ``Unavailable``.
        notify_room_contacts: Also treat room co-participants as contacts
            for presence notifications, not only friends.
    """

    def __init__(
        self,
        presence: PresenceRegistry,
        rooms: RoomDirectory,
        messages: MessageLog,
        identity: IdentityStore,
        *,
        snapshot_size: int = DEFAULT_SNAPSHOT_SIZE,
        lookup_timeout: float = DEFAULT_LOOKUP_TIMEOUT,
        notify_room_contacts: bool = True,
    ) -> None:
        self.presence = presence
        self.rooms = rooms
        self.messages = messages
        self.identity = identity
        self.snapshot_size = snapshot_size
        self.lookup_timeout = lookup_timeout
        self.notify_room_contacts = notify_room_contacts

        # connectionId -> Session (removed once the connection closes)
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

        self._handlers = {
            InboundEvent.CONNECT: self.on_connect,
            InboundEvent.JOIN_ROOM: self.on_join_room,
            InboundEvent.LEAVE_ROOM: self.on_leave_room,
            InboundEvent.SEND_MESSAGE: self.on_send_message,
            InboundEvent.TYPING_START: lambda session, payload: self.on_typing(session, payload, True),
            InboundEvent.TYPING_STOP: lambda session, payload: self.on_typing(session, payload, False),
        }

    # =========================================================================
    # Sessions
    # =========================================================================

    def open(self, connection_id: str) -> Session:
        """Register a freshly accepted connection in the UNAUTHENTICATED state."""
        with self._lock:
            session = Session(connection_id=connection_id)
            self._sessions[connection_id] = session
            return session

    def state_of(self, connection_id: str) -> ConnectionState:
        """Current state of a connection; unknown connections count as closed."""
        with self._lock:
            session = self._sessions.get(connection_id)
        return session.state if session else ConnectionState.CLOSED

    def session_of(self, connection_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(connection_id)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(
        self, connection_id: str, event: str, payload: Optional[Dict[str, Any]] = None
    ) -> List[Delivery]:
        """Handle one inbound event and return the deliveries it produces.

        Args:
            connection_id: Originating connection.
            event: Inbound event name (see ``InboundEvent``).
            payload: Event fields sent by the client.

        Returns:
            Deliveries for the transport, in the order they must be sent.
        """
        session = self.session_of(connection_id)
        if session is None or session.state == ConnectionState.CLOSED:
            logger.debug(f"[Fanout] Ignoring {event!r} on closed connection {connection_id}")
            return []

        if event == InboundEvent.DISCONNECT.value:
            return await self.on_disconnect(session)

        try:
            try:
                inbound = InboundEvent(event)
            except ValueError:
                raise InvalidInput(f"Unknown event: {event}")
            if payload is None:
                payload = {}
            if not isinstance(payload, dict):
                raise InvalidInput("Event payload must be an object")
            if inbound != InboundEvent.CONNECT and session.state != ConnectionState.ACTIVE:
                raise NotAuthorized("Connect with an identity first")

            result = self._handlers[inbound](session, payload)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        except ChatError as exc:
            logger.info(f"[Fanout] {event} from {connection_id} rejected: {exc.code}: {exc.message}")
            return [self._error(connection_id, exc)]

    # =========================================================================
    # Handlers
    # =========================================================================

    async def on_connect(self, session: Session, payload: Dict[str, Any]) -> List[Delivery]:
        """UNAUTHENTICATED -> ACTIVE.

        An existing ``userId`` is resolved through the identity collaborator;
        without one, ``displayName`` (and optional ``contactInfo``) registers
        a new identity.
        """
        if session.state == ConnectionState.ACTIVE:
            raise InvalidInput("Connection is already identified")

        user_id = payload.get("userId")
        display_name = payload.get("displayName")
        if user_id:
            profile = await self._call_identity(self.identity.resolve_identity, str(user_id))
        elif isinstance(display_name, str) and display_name.strip():
            profile = await self._call_identity(
                self.identity.register_identity, display_name.strip(), payload.get("contactInfo")
            )
        else:
            raise InvalidInput("userId or displayName is required")

        friends = await self._friends_of(profile.userId)

        # The socket may have closed while the collaborator was answering.
        if session.state == ConnectionState.CLOSED:
            return []

        record = self.presence.connect(profile.userId, profile.displayName, session.connection_id)
        session.state = ConnectionState.ACTIVE
        session.user_id = profile.userId
        session.display_name = profile.displayName
        logger.info(f"[Fanout] {profile.displayName} ({profile.userId}) connected on {session.connection_id}")

        rooms = [view(room, self.presence).model_dump(mode="json")
                 for room in self.rooms.list_for_user(profile.userId)]
        deliveries = [Delivery(
            connectionId=session.connection_id,
            event=OutboundEvent.CONNECTED_ACK,
            payload={
                "userId": profile.userId,
                "displayName": profile.displayName,
                "contactInfo": profile.contactInfo,
                "friends": friends,
                "rooms": rooms,
            },
        )]
        deliveries.extend(self._presence_notices(record.userId, record.displayName,
                                                 True, record.lastSeen, friends))
        return deliveries

    def on_join_room(self, session: Session, payload: Dict[str, Any]) -> List[Delivery]:
        """Add the identity to a room, send it a snapshot and notify the room."""
        room_id = self._room_id(payload)
        self._check_identity(session, payload)

        room = self.rooms.join(room_id, session.user_id)
        snapshot = self.messages.list_recent(room_id, self.snapshot_size)

        deliveries = [Delivery(
            connectionId=session.connection_id,
            event=OutboundEvent.ROOM_JOINED,
            payload={
                "room": view(room, self.presence).model_dump(mode="json"),
                "messages": [msg.model_dump(mode="json") for msg in snapshot],
            },
        )]
        notice = {
            "roomId": room.roomId,
            "roomName": room.name,
            "userId": session.user_id,
            "displayName": session.display_name,
        }
        deliveries.extend(self._to_room(room.participants, OutboundEvent.PARTICIPANT_JOINED,
                                        notice, exclude=session.user_id))
        return deliveries

    def on_leave_room(self, session: Session, payload: Dict[str, Any]) -> List[Delivery]:
        """Remove the identity from a room and notify the remaining participants."""
        room_id = self._room_id(payload)
        self._check_identity(session, payload)

        room = self.rooms.leave(room_id, session.user_id)
        notice = {
            "roomId": room.roomId,
            "roomName": room.name,
            "userId": session.user_id,
            "displayName": session.display_name,
        }
        deliveries = [Delivery(
            connectionId=session.connection_id,
            event=OutboundEvent.ROOM_LEFT,
            payload={"roomId": room.roomId, "roomName": room.name},
        )]
        deliveries.extend(self._to_room(room.participants, OutboundEvent.PARTICIPANT_LEFT,
                                        notice, exclude=session.user_id))
        return deliveries

    def on_send_message(self, session: Session, payload: Dict[str, Any]) -> List[Delivery]:
        """Store a message and fan it out to every participant's live connection.

        The sender must be a participant; a rejected send leaves the message
        log and room directory untouched.
        """
        room_id = self._room_id(payload)
        self._check_identity(session, payload)

        room = self.rooms.get(room_id)
        if session.user_id not in room.participants:
            raise NotInRoom(room_id, session.user_id)

        message = self.messages.append(room_id, session.user_id, session.display_name,
                                       payload.get("body"))
        summary = MessageSummary(text=message.body, senderName=message.senderName,
                                 timestamp=message.timestamp)
        room = self.rooms.record_activity(room_id, summary, message.timestamp)

        deliveries = self._to_room(room.participants, OutboundEvent.NEW_MESSAGE,
                                   message.model_dump(mode="json"))
        deliveries.append(Delivery(
            connectionId=session.connection_id,
            event=OutboundEvent.MESSAGE_ACK,
            payload={
                "messageId": message.messageId,
                "roomId": room_id,
                "timestamp": message.timestamp,
            },
        ))
        logger.debug(f"[Fanout] Message {message.messageId} in {room_id} -> {len(deliveries) - 1} connections")
        return deliveries

    def on_typing(self, session: Session, payload: Dict[str, Any], is_typing: bool) -> List[Delivery]:
        """Relay a typing indicator to the other participants. Nothing is stored."""
        room_id = self._room_id(payload)
        self._check_identity(session, payload)

        if not self.rooms.is_participant(room_id, session.user_id):
            return []
        indicator = {
            "roomId": room_id,
            "userId": session.user_id,
            "displayName": session.display_name,
            "isTyping": is_typing,
        }
        return self._to_room(self.rooms.participants_of(room_id), OutboundEvent.TYPING_INDICATOR,
                             indicator, exclude=session.user_id)

    async def on_disconnect(self, session: Session) -> List[Delivery]:
        """ACTIVE -> CLOSED. Marks the user offline and notifies live contacts.

        Contacts without a live connection are skipped. Disconnecting a
        connection that no longer owns a presence record is a no-op.
        """
        session.state = ConnectionState.CLOSED
        with self._lock:
            self._sessions.pop(session.connection_id, None)

        record = self.presence.disconnect(session.connection_id)
        if record is None:
            return []
        logger.info(f"[Fanout] {record.displayName} ({record.userId}) disconnected")

        friends = await self._friends_of(record.userId)
        return self._presence_notices(record.userId, record.displayName,
                                      False, record.lastSeen, friends)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _room_id(self, payload: Dict[str, Any]) -> str:
        room_id = payload.get("roomId")
        if not isinstance(room_id, str) or not room_id:
            raise InvalidInput("roomId is required")
        return room_id

    def _check_identity(self, session: Session, payload: Dict[str, Any]) -> None:
        # The server-tracked identity is authoritative.
        claimed = payload.get("userId")
        if claimed and claimed != session.user_id:
            raise NotAuthorized("userId does not match the connected identity")

    def _live_connections(self, user_ids: Iterable[str], exclude: Optional[str] = None) -> List[str]:
        connections = []
        for user_id in sorted(set(user_ids)):
            if user_id == exclude:
                continue
            connection_id = self.presence.connection_of(user_id)
            if connection_id:
                connections.append(connection_id)
        return connections

    def _to_room(
        self,
        participants: Iterable[str],
        event: OutboundEvent,
        payload: Dict[str, Any],
        exclude: Optional[str] = None,
    ) -> List[Delivery]:
        return [
            Delivery(connectionId=connection_id, event=event, payload=dict(payload))
            for connection_id in self._live_connections(participants, exclude=exclude)
        ]

    def _contacts(self, user_id: str, friends: Iterable[str]) -> List[str]:
        contacts = set(friends)
        if self.notify_room_contacts:
            for room in self.rooms.list_for_user(user_id):
                contacts.update(room.participants)
        contacts.discard(user_id)
        return sorted(contacts)

    def _presence_notices(
        self, user_id: str, display_name: str, online: bool, last_seen: float, friends: List[str]
    ) -> List[Delivery]:
        notice = {
            "userId": user_id,
            "displayName": display_name,
            "online": online,
            "lastSeen": last_seen,
        }
        return self._to_room(self._contacts(user_id, friends), OutboundEvent.PRESENCE_CHANGED,
                             notice, exclude=user_id)

    async def _call_identity(self, method, *args):
        try:
            return await asyncio.wait_for(method(*args), timeout=self.lookup_timeout)
        except ChatError:
            raise
        except asyncio.TimeoutError:
            logger.warning(f"[Fanout] Identity call {method.__name__} timed out")
            raise Unavailable("Identity service timed out")
        except Exception as exc:
            logger.warning(f"[Fanout] Identity call {method.__name__} failed: {exc}")
            raise Unavailable("Identity service unavailable") from exc

    async def _friends_of(self, user_id: str) -> List[str]:
        # Presence notices are best-effort; a failed friend lookup only
        # narrows the set of contacts to room co-participants.
        try:
            return list(await self._call_identity(self.identity.friends_of, user_id))
        except ChatError as exc:
            logger.warning(f"[Fanout] Friend lookup for {user_id} failed: {exc.message}")
            return []

    def _error(self, connection_id: str, exc: ChatError) -> Delivery:
        return Delivery(connectionId=connection_id, event=OutboundEvent.ERROR,
                        payload=exc.to_payload())
