"""Identity store interface and the in-memory implementation.

Usage:
    store = InMemoryIdentityStore()
    alice = await store.register_identity("Alice", "+15550100")
    bob = await store.register_identity("Bob", "+15550101")
    await store.add_friend(alice.userId, bob.userId)
    friends = await store.friends_of(alice.userId)
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set

from app.chat.errors import Conflict, InvalidInput, NotFound

from .schemas import UserProfile

logger = logging.getLogger(__name__)


class IdentityStore(ABC):
    """Read interface the chat core consumes.

    Implementations may talk to a remote service; every method is a
    coroutine and may fail or time out independently of the core.
    """

    @abstractmethod
    async def resolve_identity(self, user_id: str) -> UserProfile:
        """Return the profile for ``user_id``.

        Raises:
            NotFound: If the user is not registered.
        """

    @abstractmethod
    async def register_identity(
        self, display_name: str, contact_info: Optional[str] = None
    ) -> UserProfile:
        """Register a new identity and return its profile."""

    @abstractmethod
    async def friends_of(self, user_id: str) -> List[str]:
        """Return the user ids of ``user_id``'s friends."""


class InMemoryIdentityStore(IdentityStore):
    """Process-local profiles and an undirected friend graph."""

    def __init__(self) -> None:
        self._users: Dict[str, UserProfile] = {}
        self._by_contact: Dict[str, str] = {}
        self._friends: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def resolve_identity(self, user_id: str) -> UserProfile:
        profile = self._users.get(user_id)
        if profile is None:
            raise NotFound(f"User {user_id} not found")
        return profile.model_copy()

    async def register_identity(
        self, display_name: str, contact_info: Optional[str] = None
    ) -> UserProfile:
        """Register a user.

        Raises:
            InvalidInput: If the display name is empty.
            Conflict: If the contact info is already registered.
        """
        display_name = (display_name or "").strip()
        if not display_name:
            raise InvalidInput("Display name is required")
        contact = (contact_info or "").strip() or None

        async with self._lock:
            if contact and contact in self._by_contact:
                raise Conflict("Contact info already registered")
            profile = UserProfile(
                userId=str(uuid.uuid4()),
                displayName=display_name,
                contactInfo=contact,
            )
            self._users[profile.userId] = profile
            self._friends[profile.userId] = set()
            if contact:
                self._by_contact[contact] = profile.userId

        logger.info(f"[Identity] Registered {display_name} ({profile.userId})")
        return profile.model_copy()

    async def friends_of(self, user_id: str) -> List[str]:
        if user_id not in self._users:
            raise NotFound(f"User {user_id} not found")
        return sorted(self._friends.get(user_id, set()))

    async def find_by_contact(self, contact_info: str) -> Optional[UserProfile]:
        user_id = self._by_contact.get((contact_info or "").strip())
        return self._users[user_id].model_copy() if user_id else None

    async def search_users(
        self, query: str, exclude_user_id: Optional[str] = None, limit: int = 20
    ) -> List[UserProfile]:
        """Users whose display name or contact info contains ``query``.

        Matching is case-insensitive. Results are ordered by display name.

        Raises:
            InvalidInput: If the query is empty.
        """
        needle = (query or "").strip().lower()
        if not needle:
            raise InvalidInput("Search query is required")
        matches = [
            profile for profile in self._users.values()
            if profile.userId != exclude_user_id
            and (needle in profile.displayName.lower()
                 or needle in (profile.contactInfo or "").lower())
        ]
        matches.sort(key=lambda p: (p.displayName.lower(), p.userId))
        return [profile.model_copy() for profile in matches[:limit]]

    async def add_friend(self, user_id: str, friend_id: str) -> None:
        """Make two users friends of each other.

        Raises:
            InvalidInput: If a user tries to befriend themselves.
            NotFound: If either user is unknown.
            Conflict: If they are already friends.
        """
        if user_id == friend_id:
            raise InvalidInput("Cannot add yourself as a friend")
        async with self._lock:
            if user_id not in self._users or friend_id not in self._users:
                raise NotFound("User or friend not found")
            if friend_id in self._friends[user_id]:
                raise Conflict("Already friends")
            self._friends[user_id].add(friend_id)
            self._friends[friend_id].add(user_id)
        logger.info(f"[Identity] {user_id} and {friend_id} are now friends")

    async def remove_friend(self, user_id: str, friend_id: str) -> None:
        """Remove a friendship in both directions. Missing links are ignored."""
        async with self._lock:
            if user_id not in self._users or friend_id not in self._users:
                raise NotFound("User or friend not found")
            self._friends[user_id].discard(friend_id)
            self._friends[friend_id].discard(user_id)
        logger.info(f"[Identity] {user_id} and {friend_id} are no longer friends")
