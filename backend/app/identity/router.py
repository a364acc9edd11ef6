"""Users router: registration, lookup and friend graph endpoints.

Endpoints:
    POST   /users                                - Register a user
    GET    /users/lookup?contact=...             - Find a user by contact info
    GET    /users/search?q=...                   - Search users by name or contact
    GET    /users/{user_id}                      - Profile plus presence
    GET    /users/{user_id}/rooms                - Rooms the user belongs to
    GET    /users/{user_id}/friends              - Friends with presence
    POST   /users/{user_id}/friends/{friend_id}  - Add a friend
    DELETE /users/{user_id}/friends/{friend_id}  - Remove a friend
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query

from app.chat.dependencies import get_chat_core
from app.chat.directory import view
from app.chat.errors import NotFound
from app.chat.schemas import RoomView

from .schemas import RegisterUserRequest, UserProfile
from .service import InMemoryIdentityStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


def _store() -> InMemoryIdentityStore:
    identity = get_chat_core().identity
    if not isinstance(identity, InMemoryIdentityStore):
        raise HTTPException(status_code=501, detail="Identity store is managed externally")
    return identity


def _with_presence(profile: UserProfile) -> dict:
    record = get_chat_core().presence.get(profile.userId)
    return {
        **profile.model_dump(),
        "online": record.online if record else False,
        "lastSeen": record.lastSeen if record else None,
    }


@router.post("", status_code=201)
async def register_user(body: RegisterUserRequest) -> dict:
    """Register a new user identity.

    Returns:
        The created profile (201 Created).
    """
    profile = await _store().register_identity(body.displayName, body.contactInfo)
    return _with_presence(profile)


@router.get("/lookup")
async def lookup_user(contact: str = Query(..., min_length=1, description="Exact contact info")) -> dict:
    """Find the user registered with a contact (phone number or email)."""
    profile = await _store().find_by_contact(contact)
    if profile is None:
        raise NotFound("No user with that contact info")
    return _with_presence(profile)


@router.get("/search")
async def search_users(
    q: str = Query(..., min_length=1, description="Case-insensitive name or contact fragment"),
    exclude: Optional[str] = Query(None, description="User ID to leave out, usually the caller"),
    limit: int = Query(20, ge=1, le=100),
) -> List[dict]:
    """Search users by display name or contact info."""
    profiles = await _store().search_users(q, exclude_user_id=exclude, limit=limit)
    return [_with_presence(profile) for profile in profiles]


@router.get("/{user_id}")
async def get_user(user_id: str) -> dict:
    profile = await _store().resolve_identity(user_id)
    return _with_presence(profile)


@router.get("/{user_id}/rooms", response_model=List[RoomView])
async def get_user_rooms(user_id: str) -> List[RoomView]:
    """Rooms containing the user, most recently active first."""
    core = get_chat_core()
    return [view(room, core.presence) for room in core.rooms.list_for_user(user_id)]


@router.get("/{user_id}/friends")
async def get_friends(user_id: str) -> List[dict]:
    store = _store()
    friends = []
    for friend_id in await store.friends_of(user_id):
        friends.append(_with_presence(await store.resolve_identity(friend_id)))
    return friends


@router.post("/{user_id}/friends/{friend_id}", status_code=201)
async def add_friend(user_id: str, friend_id: str) -> dict:
    await _store().add_friend(user_id, friend_id)
    return {"success": True}


@router.delete("/{user_id}/friends/{friend_id}")
async def remove_friend(user_id: str, friend_id: str) -> dict:
    await _store().remove_friend(user_id, friend_id)
    return {"success": True}
