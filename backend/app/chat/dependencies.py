"""Construction and lookup of the process-wide chat core.

The stores are plain objects built here and injected into the fanout router;
nothing in the core reaches for a module-level singleton. The application
keeps one ``ChatCore`` and tests can swap it with ``set_chat_core``.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from app.config import AppConfig, get_config
from app.identity.service import IdentityStore, InMemoryIdentityStore

from .directory import RoomDirectory
from .fanout import FanoutRouter
from .history import MessageLog
from .manager import ConnectionManager
from .presence import PresenceRegistry

logger = logging.getLogger(__name__)


@dataclass
class ChatCore:
    """Everything the WebSocket and HTTP routes need."""
    presence: PresenceRegistry
    rooms: RoomDirectory
    messages: MessageLog
    identity: IdentityStore
    fanout: FanoutRouter
    transport: ConnectionManager


def build_chat_core(
    config: Optional[AppConfig] = None,
    identity: Optional[IdentityStore] = None,
) -> ChatCore:
    """Build a fresh set of stores wired into a fanout router."""
    config = config or get_config()
    presence = PresenceRegistry()
    rooms = RoomDirectory()
    messages = MessageLog(history_limit=config.chat.history_limit)
    identity = identity or InMemoryIdentityStore()
    fanout = FanoutRouter(
        presence,
        rooms,
        messages,
        identity,
        snapshot_size=config.chat.snapshot_size,
        lookup_timeout=config.identity.lookup_timeout_seconds,
        notify_room_contacts=config.chat.notify_room_contacts,
    )
    logger.info(
        "Chat core ready (history_limit=%d, snapshot_size=%d)",
        config.chat.history_limit,
        config.chat.snapshot_size,
    )
    return ChatCore(presence, rooms, messages, identity, fanout, ConnectionManager())


_core: Optional[ChatCore] = None


def get_chat_core() -> ChatCore:
    """Get the application chat core, building it on first use."""
    global _core
    if _core is None:
        _core = build_chat_core()
    return _core


def set_chat_core(core: Optional[ChatCore]) -> None:
    """Replace the application chat core (``None`` rebuilds on next use)."""
    global _core
    _core = core
