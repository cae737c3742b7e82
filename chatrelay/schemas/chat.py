"""Dashboard chat and usage schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class ChatSendRequest(BaseModel):
    """POST /v1/chat/send request."""

    message: str = Field(min_length=1, max_length=10_000)


class ChatSendResponse(BaseModel):
    content: str
    model: str


class ChatHistoryItem(BaseModel):
    """One stored dashboard message."""

    model_config = {"from_attributes": True}

    id: str
    role: str
    content: str
    model: str | None = None
    created_at: datetime


class UsageSummary(BaseModel):
    """GET /v1/usage/summary response. limit is null for unlimited plans."""

    message_count: int
    total_input_tokens: int
    total_output_tokens: int
    limit: int | None
    plan: str
    period_start: str
