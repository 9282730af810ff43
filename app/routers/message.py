from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.message import MessageRequest, MessageResponse
from app.services.message_service import STATUS_ERROR, InboundMessage, handle_inbound_message

router = APIRouter()


@router.post("/message", response_model=MessageResponse)
def handle_message(request: MessageRequest, db: Session = Depends(get_db)):
    """Handle a normalized inbound message from the webhook parser."""
    result = handle_inbound_message(
        db,
        InboundMessage(
            tenant_id=request.tenant_id,
            contact_id=request.contact_id,
            contact_phone=request.contact_phone,
            text=request.text,
            reply_to_message_id=request.reply_to_message_id,
            message_id=request.message_id,
            history=[entry.model_dump() for entry in request.history],
        ),
    )
    return MessageResponse(
        success=result.status != STATUS_ERROR,
        status=result.status,
        handled_by=result.handled_by,
        reply=result.reply,
        step=result.step,
        conversation_id=result.conversation_id,
        backend=result.backend,
    )
