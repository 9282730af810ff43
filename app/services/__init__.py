from app.services.conversation_service import (
    append_assistant_message,
    append_user_message,
    close_conversation,
    get_or_create_conversation,
)
from app.services.session_store import (
    SessionStoreError,
    clear_session,
    get_or_create_session,
    update_step,
)
from app.services.state_machine import (
    InvalidTransitionError,
    OrderStep,
    can_transition,
    transition,
)

__all__ = [
    "append_assistant_message",
    "append_user_message",
    "close_conversation",
    "get_or_create_conversation",
    "SessionStoreError",
    "clear_session",
    "get_or_create_session",
    "update_step",
    "InvalidTransitionError",
    "OrderStep",
    "can_transition",
    "transition",
]
