"""Admin API endpoints for inspecting and maintaining session state."""

import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.schemas.admin import ConversationStatsResponse, MaintenanceResponse, SessionResponse
from app.services.conversation_service import close_conversation, get_conversation, get_conversation_stats
from app.services.maintenance_service import run_maintenance
from app.services.session_store import ORDER_FLOW_KIND, clear_session, find_live_session

router = APIRouter(prefix="/admin", tags=["admin"])


class VersionResponse(BaseModel):
    version: str
    git_commit: Optional[str] = None


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


# === MAINTENANCE ===


@router.post("/maintenance", response_model=MaintenanceResponse)
def maintenance(
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Purge expired sessions, expire conversations and heal invariant violations."""
    _require_admin_token(x_admin_token)
    return run_maintenance(db)


# === CONVERSATIONS ===


@router.get(
    "/tenants/{tenant_id}/conversations/{conversation_id}",
    response_model=ConversationStatsResponse,
)
def conversation_stats(
    tenant_id: str,
    conversation_id: str,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    record = get_conversation(db, tenant_id, conversation_id)
    if not record:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return get_conversation_stats(record)


@router.post(
    "/tenants/{tenant_id}/conversations/{conversation_id}/close",
    response_model=ConversationStatsResponse,
)
def close_conversation_endpoint(
    tenant_id: str,
    conversation_id: str,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    record = get_conversation(db, tenant_id, conversation_id)
    if not record:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return get_conversation_stats(close_conversation(db, record))


# === SESSIONS ===


@router.get("/tenants/{tenant_id}/sessions/{contact_id}", response_model=SessionResponse)
def get_session(
    tenant_id: str,
    contact_id: str,
    kind: str = ORDER_FLOW_KIND,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    record = find_live_session(db, tenant_id, contact_id, kind)
    if not record:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionResponse(
        tenant_id=record.tenant_id,
        contact_id=record.contact_id,
        kind=record.kind,
        current_step=record.current_step,
        data=record.data or {},
        expires_at=record.expires_at,
    )


@router.delete("/tenants/{tenant_id}/sessions/{contact_id}", response_model=SessionResponse)
def reset_session(
    tenant_id: str,
    contact_id: str,
    kind: str = ORDER_FLOW_KIND,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Reset a contact's session to idle. The record itself is kept."""
    _require_admin_token(x_admin_token)
    record = find_live_session(db, tenant_id, contact_id, kind)
    if not record:
        raise HTTPException(status_code=404, detail="Session not found")
    record = clear_session(db, record)
    return SessionResponse(
        tenant_id=record.tenant_id,
        contact_id=record.contact_id,
        kind=record.kind,
        current_step=record.current_step,
        data=record.data or {},
        expires_at=record.expires_at,
    )


@router.get("/version", response_model=VersionResponse)
async def get_version():
    """Return build metadata for diagnostics."""
    return VersionResponse(
        version=os.environ.get("APP_VERSION", "unknown"),
        git_commit=os.environ.get("GIT_COMMIT"),
    )
