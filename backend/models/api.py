"""API request/response models."""
from typing import List, Optional

from pydantic import BaseModel, Field


class ConversationResponse(BaseModel):
    """Response for a newly created conversation."""
    conversationId: str


class GenerateResponse(BaseModel):
    """Assistant reply for one turn."""
    text: str = Field(..., description="Natural-language reply, never empty")
    conversationId: Optional[str] = None


class HistoryResponse(BaseModel):
    """Rendered conversation history."""
    history: List[str]
