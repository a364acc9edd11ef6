"""Pydantic schemas for the identity module."""
import time
from typing import Optional

from pydantic import BaseModel, Field


class UserProfile(BaseModel):
    """Registered user identity."""
    userId: str
    displayName: str
    contactInfo: Optional[str] = None
    createdAt: float = Field(default_factory=time.time)


class RegisterUserRequest(BaseModel):
    """Request body for registering a user."""
    displayName: str = Field(..., min_length=1, max_length=100)
    contactInfo: Optional[str] = Field(default=None, max_length=100)
