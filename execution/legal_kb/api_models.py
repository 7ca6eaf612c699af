"""
Pydantic models for the Legal Knowledge Base FastAPI backend.

Request text fields are optional strings. Emptiness and length are checked by
TokenAccountant.validate_input, not by the models.
"""

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class SearchRequest(BaseModel):
    """Request body for keyword search."""
    query: Optional[str] = None


class QARequest(BaseModel):
    """Request body for streamed Q&A."""
    question: Optional[str] = None


class HistoryMessage(BaseModel):
    """A prior consultant message held by the client."""
    role: Literal["user", "assistant"]
    content: str
    documents_ids: Optional[list[int]] = None
    tokens_used: Optional[int] = None
    timestamp: Optional[datetime] = None


class ConsultantRequest(BaseModel):
    """Request body for a consultant turn."""
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    conversation_history: list[HistoryMessage] = Field(
        default_factory=list, alias="conversationHistory"
    )
    use_pro_model: bool = Field(default=False, alias="useProModel")


class SearchResult(BaseModel):
    """One retrieved chunk."""
    id: int
    content: str
    metadata: dict = {}
    similarity: float


class SearchResponse(BaseModel):
    """Response body for keyword search."""
    success: bool = True
    query: str
    keywords: list[str]
    results: list[SearchResult]
    tokens_used: int
    remaining_tokens: int


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    database: str


# =========================================================================
# Profile models
# =========================================================================

class CreditsInfo(BaseModel):
    total_tokens: int = 0
    used_tokens: int = 0
    remaining_tokens: int = 0


class ProfileResponse(BaseModel):
    """User profile with token balances."""
    id: str
    email: str
    name: Optional[str] = None
    role: str
    credits: CreditsInfo


# =========================================================================
# Conversation models
# =========================================================================

class ConversationResponse(BaseModel):
    """Response body for a conversation."""
    id: str
    title: str
    model_used: str
    total_tokens: int
    created_at: str
    updated_at: str


class MessageResponse(BaseModel):
    """A single message in a conversation."""
    role: str
    content: str
    documents_ids: list[int] = []
    tokens_used: int = 0
    timestamp: str
