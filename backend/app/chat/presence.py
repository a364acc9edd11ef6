"""Presence registry mapping connections to user identities.

The registry keeps one ``PresenceRecord`` per user plus a reverse index from
connection id to user id, so disconnects and contact notifications never scan
the whole user table.

Known limitation:
    A second ``connect`` for a user that already has a live connection
    silently replaces the old connection id. The old socket is not closed and
    may still be open at the transport level until it disconnects on its own;
    its later disconnect is then a no-op.

Thread Safety:
    Every operation takes ``_lock``; each mutation is a single atomic
    read-modify-write over both indexes.
"""
import logging
import threading
from typing import Dict, Optional

from .schemas import PresenceRecord, clock

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Tracks which users are online and on which connection."""

    def __init__(self) -> None:
        # userId -> PresenceRecord
        self._records: Dict[str, PresenceRecord] = {}

        # connectionId -> userId
        self._by_connection: Dict[str, str] = {}

        self._lock = threading.Lock()

    def connect(self, user_id: str, display_name: str, connection_id: str) -> PresenceRecord:
        """Mark a user online on the given connection.

        Args:
            user_id: Identity that connected.
            display_name: Name to show to other participants.
            connection_id: Transport connection id.

        Returns:
            A copy of the updated presence record.
        """
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                record = PresenceRecord(userId=user_id, displayName=display_name)
                self._records[user_id] = record
            elif record.connectionId and record.connectionId != connection_id:
                # Supersede the previous live connection.
                self._by_connection.pop(record.connectionId, None)
                logger.info(
                    f"[Presence] User {user_id} superseded connection "
                    f"{record.connectionId} with {connection_id}"
                )

            # A connection id belongs to at most one user.
            previous_owner = self._by_connection.get(connection_id)
            if previous_owner and previous_owner != user_id:
                self._mark_offline(self._records[previous_owner])

            record.displayName = display_name or record.displayName
            record.connectionId = connection_id
            record.online = True
            record.lastSeen = clock.now()
            self._by_connection[connection_id] = user_id
            return record.model_copy()

    def disconnect(self, connection_id: str) -> Optional[PresenceRecord]:
        """Mark the owner of a connection offline.

        Returns:
            A copy of the updated record, or None if the connection is not
            registered (already disconnected or superseded).
        """
        with self._lock:
            user_id = self._by_connection.get(connection_id)
            if user_id is None:
                return None
            record = self._records[user_id]
            self._mark_offline(record)
            return record.model_copy()

    def _mark_offline(self, record: PresenceRecord) -> None:
        if record.connectionId:
            self._by_connection.pop(record.connectionId, None)
        record.connectionId = None
        record.online = False
        record.lastSeen = clock.now()

    def get(self, user_id: str) -> Optional[PresenceRecord]:
        with self._lock:
            record = self._records.get(user_id)
            return record.model_copy() if record else None

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            record = self._records.get(user_id)
            return bool(record and record.online)

    def connection_of(self, user_id: str) -> Optional[str]:
        with self._lock:
            record = self._records.get(user_id)
            return record.connectionId if record else None

    def user_of(self, connection_id: str) -> Optional[str]:
        with self._lock:
            return self._by_connection.get(connection_id)

    def online_count(self) -> int:
        with self._lock:
            return len(self._by_connection)
