"""Request bodies for the user endpoints."""
from typing import Optional

from pydantic import BaseModel, Field


class UserCreate(BaseModel):
    """Request body for registering a user (development only)."""
    displayName: str = Field(..., max_length=100)
    id: Optional[str] = Field(default=None, min_length=1, max_length=100)
