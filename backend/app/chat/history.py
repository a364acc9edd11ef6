"""Per-room bounded message history.

The log is a cache, not a store of record: each room keeps at most
``history_limit`` messages and evicts the oldest first. Timestamps come from
the process-wide clock, which never repeats a value, so insertion order is
also timestamp order and a timestamp is a usable paging cursor.
"""
import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from .errors import InvalidInput
from .schemas import Message, clock

logger = logging.getLogger(__name__)

# Default number of messages kept per room
DEFAULT_HISTORY_LIMIT = 1000


class MessageLog:
    """Bounded, ordered message history keyed by room id."""

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self.history_limit = history_limit
        self._messages: Dict[str, Deque[Message]] = {}
        self._room_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _room(self, room_id: str, create: bool = False):
        with self._lock:
            messages = self._messages.get(room_id)
            if messages is None:
                if not create:
                    return None, None
                messages = deque(maxlen=self.history_limit)
                self._messages[room_id] = messages
                self._room_locks[room_id] = threading.Lock()
            return messages, self._room_locks[room_id]

    def append(self, room_id: str, sender_id: str, sender_name: str, body: str) -> Message:
        """Append a message to a room's history.

        Args:
            room_id: Target room.
            sender_id: Sender's user id.
            sender_name: Sender's display name at send time.
            body: Message text; surrounding whitespace is stripped.

        Returns:
            The stored message with its assigned id and timestamp.

        Raises:
            InvalidInput: If the body is empty or whitespace only.
        """
        text = (body or "").strip() if isinstance(body, str) else ""
        if not text:
            raise InvalidInput("Message body is required")

        messages, lock = self._room(room_id, create=True)
        with lock:
            # Timestamp is taken under the room lock so append order and
            # timestamp order agree.
            message = Message(
                roomId=room_id,
                senderId=sender_id,
                senderName=sender_name,
                body=text,
                timestamp=clock.now(),
            )
            if len(messages) == messages.maxlen:
                logger.debug(f"[History] Evicting oldest message in room {room_id}")
            messages.append(message)
        return message

    def list_all(self, room_id: str) -> List[Message]:
        """All stored messages of a room, oldest first."""
        messages, lock = self._room(room_id)
        if messages is None:
            return []
        with lock:
            return list(messages)

    def list_recent(self, room_id: str, limit: int) -> List[Message]:
        """The newest ``limit`` messages of a room, oldest first."""
        if limit < 0:
            raise InvalidInput("limit must not be negative")
        if limit == 0:
            return []
        return self.list_all(room_id)[-limit:]

    def list_before(
        self, room_id: str, before_ts: Optional[float], limit: int
    ) -> List[Message]:
        """Page of messages older than ``before_ts`` (for lazy loading).

        With no cursor this is the same as ``list_recent``.
        """
        messages = self.list_all(room_id)
        if before_ts is not None:
            messages = [msg for msg in messages if msg.timestamp < before_ts]
        if limit <= 0:
            return []
        return messages[-limit:]

    def search(self, room_id: str, term: Optional[str]) -> List[Message]:
        """Messages whose body or sender name contains ``term``.

        Matching is case-insensitive; an empty term returns everything.
        """
        messages = self.list_all(room_id)
        if not term:
            return messages
        needle = term.lower()
        return [
            msg for msg in messages
            if needle in msg.body.lower() or needle in msg.senderName.lower()
        ]

    def count(self, room_id: str) -> int:
        messages, lock = self._room(room_id)
        if messages is None:
            return 0
        with lock:
            return len(messages)
