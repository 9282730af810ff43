from app.schemas.admin import ConversationStatsResponse, MaintenanceResponse, SessionResponse
from app.schemas.message import HistoryEntry, MessageRequest, MessageResponse

__all__ = [
    "ConversationStatsResponse",
    "HistoryEntry",
    "MaintenanceResponse",
    "MessageRequest",
    "MessageResponse",
    "SessionResponse",
]
