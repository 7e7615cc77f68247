"""Request bodies for the chat endpoints.

Content is deliberately not length-checked here: the Sequencer trims and
validates it so HTTP and WebSocket sends fail the same way.
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class ChatCreate(BaseModel):
    """Request body for creating a chat. The caller is always a participant."""
    participantIds: List[str] = Field(..., min_length=1)
    isGroup: bool = False
    name: Optional[str] = Field(default=None, max_length=100)


class MessageCreate(BaseModel):
    content: str
    clientMessageId: Optional[str] = Field(default=None, min_length=1, max_length=100)


class AckRequest(BaseModel):
    seq: int
