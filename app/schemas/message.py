from typing import Literal, Optional

from pydantic import BaseModel, Field


class HistoryEntry(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class MessageRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    contact_id: str = Field(min_length=1)
    contact_phone: Optional[str] = None
    text: str
    reply_to_message_id: Optional[str] = None
    message_id: Optional[str] = None
    history: list[HistoryEntry] = Field(default_factory=list)


class MessageResponse(BaseModel):
    success: bool
    status: str
    handled_by: str
    reply: Optional[str] = None
    step: Optional[str] = None
    conversation_id: Optional[str] = None
    backend: Optional[str] = None
