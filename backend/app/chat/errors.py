"""Error taxonomy for the chat core.

Every store raises one of these; the fanout router turns them into an
``error`` event for the originating connection and the HTTP routes turn them
into JSON error responses.
"""


class ChatError(Exception):
    """Base exception for chat core errors."""

    code: str = "error"
    status_code: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidInput(ChatError):
    """Raised when a required field is missing or malformed."""
    code = "invalid_input"
    status_code = 400


class NotFound(ChatError):
    """Raised when a room or user does not exist."""
    code = "not_found"
    status_code = 404


class NotAuthorized(ChatError):
    """Raised when an identity is not allowed to perform an action."""
    code = "not_authorized"
    status_code = 403


class NotInRoom(NotAuthorized):
    """Raised when a non-participant acts on a room."""
    code = "not_in_room"

    def __init__(self, room_id: str, user_id: str):
        self.room_id = room_id
        self.user_id = user_id
        super().__init__(f"User {user_id} is not a participant of room {room_id}")


class Conflict(ChatError):
    """Raised on duplicate relationships or restricted membership changes."""
    code = "conflict"
    status_code = 409


class Unavailable(ChatError):
    """Raised when a collaborator lookup fails or times out."""
    code = "unavailable"
    status_code = 503
