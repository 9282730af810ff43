from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class ConversationStatsResponse(BaseModel):
    conversation_id: str
    message_count: int
    total_tokens: int
    duration_minutes: int
    is_active: bool
    has_remote_thread: bool
    created_at: datetime
    expires_at: datetime


class SessionResponse(BaseModel):
    tenant_id: str
    contact_id: str
    kind: str
    current_step: str
    data: dict[str, Any]
    expires_at: datetime


class MaintenanceResponse(BaseModel):
    sessions_purged: int
    conversations_expired: int
    thread_claims_released: int
    receipts_purged: int
    healed_count: int
    details: list[dict]
    checked_at: datetime
    message: Optional[str] = None
