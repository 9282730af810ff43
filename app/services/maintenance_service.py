from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.config import settings
from app.database import utcnow
from app.logging_config import get_logger
from app.models import ConversationRecord
from app.services.alert_service import alert_warning
from app.services.conversation_service import sweep_expired_conversations
from app.services.message_service import sweep_inbound_receipts
from app.services.session_store import run_with_retry, sweep_expired_sessions

logger = get_logger("maintenance_service")


def release_stale_thread_claims(db: Session, *, now: Optional[datetime] = None) -> int:
    """Drop thread-creation claims whose owner never confirmed or released them."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.thread_claim_ttl_seconds)

    def _release() -> int:
        result = db.execute(
            update(ConversationRecord)
            .where(
                ConversationRecord.thread_claim_token.is_not(None),
                ConversationRecord.thread_claimed_at <= cutoff,
            )
            .values(thread_claim_token=None, thread_claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    return run_with_retry(db, _release, description="release_stale_thread_claims")


def repair_duplicate_active_conversations(db: Session, *, now: Optional[datetime] = None) -> list[dict]:
    """Keep only the newest active conversation per (tenant, contact)."""
    now = now or utcnow()
    healed = []

    duplicates = (
        db.query(ConversationRecord.tenant_id, ConversationRecord.contact_id)
        .filter(ConversationRecord.is_active.is_(True))
        .group_by(ConversationRecord.tenant_id, ConversationRecord.contact_id)
        .having(func.count(ConversationRecord.id) > 1)
        .all()
    )

    for tenant_id, contact_id in duplicates:
        records = (
            db.query(ConversationRecord)
            .filter(
                ConversationRecord.tenant_id == tenant_id,
                ConversationRecord.contact_id == contact_id,
                ConversationRecord.is_active.is_(True),
            )
            .order_by(ConversationRecord.created_at.desc())
            .all()
        )
        keeper = records[0]
        for record in records[1:]:
            record.is_active = False
            record.closed_at = now
            healed.append(
                {
                    "tenant_id": tenant_id,
                    "conversation_id": record.id,
                    "issue": "duplicate_active_conversation",
                    "action": f"deactivated_in_favour_of {keeper.id}",
                }
            )
            logger.warning(
                f"Healed duplicate active conversation {record.id}",
                extra={"context": {"tenant_id": tenant_id, "kept": keeper.id}},
            )

    db.commit()
    return healed


def run_maintenance(db: Session, *, now: Optional[datetime] = None) -> dict:
    """Storage hygiene pass. Never required for correctness."""
    now = now or utcnow()

    healed = repair_duplicate_active_conversations(db, now=now)
    result = {
        "sessions_purged": sweep_expired_sessions(db, now=now),
        "conversations_expired": sweep_expired_conversations(db, now=now),
        "thread_claims_released": release_stale_thread_claims(db, now=now),
        "receipts_purged": sweep_inbound_receipts(db, now=now),
        "healed_count": len(healed),
        "details": healed,
        "checked_at": now.isoformat(),
    }

    if healed:
        alert_warning(f"Maintenance healed {len(healed)} conversation(s)", {"healed_count": len(healed)})

    logger.info("Maintenance completed", extra={"context": {k: v for k, v in result.items() if k != "details"}})
    return result
