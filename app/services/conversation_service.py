"""AI conversation records: message history plus the 0..1 remote thread id.

A record is reused while it is active, unexpired and has seen activity within
the caller's reuse window. expires_at is fixed at creation (created_at plus the
window) and is not extended by activity, so a thread has a capped lifetime.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from app.config import settings
from app.database import dialect_insert, utcnow
from app.logging_config import get_logger
from app.models import ConversationRecord
from app.services.session_store import run_with_retry

logger = get_logger("conversation_service")

COUNTED_ROLES = {"user", "assistant"}


def new_conversation_id() -> str:
    return f"conv_{uuid.uuid4().hex[:20]}"


def _window(reuse_window: Union[timedelta, int]) -> timedelta:
    if isinstance(reuse_window, timedelta):
        return reuse_window
    return timedelta(minutes=reuse_window)


def _active_query(db: Session, tenant_id: str, contact_id: str):
    return db.query(ConversationRecord).filter(
        ConversationRecord.tenant_id == tenant_id,
        ConversationRecord.contact_id == contact_id,
        ConversationRecord.is_active.is_(True),
    )


def get_conversation(db: Session, tenant_id: str, conversation_id: str) -> Optional[ConversationRecord]:
    return (
        db.query(ConversationRecord)
        .filter(ConversationRecord.tenant_id == tenant_id, ConversationRecord.id == conversation_id)
        .first()
    )


def find_reusable_conversation(
    db: Session,
    tenant_id: str,
    contact_id: str,
    reuse_window: Union[timedelta, int],
    *,
    now: Optional[datetime] = None,
) -> Optional[ConversationRecord]:
    now = now or utcnow()
    return (
        _active_query(db, tenant_id, contact_id)
        .filter(
            ConversationRecord.expires_at > now,
            ConversationRecord.last_activity_at > now - _window(reuse_window),
        )
        .order_by(ConversationRecord.created_at.desc())
        .first()
    )


def get_or_create_conversation(
    db: Session,
    tenant_id: str,
    contact_id: str,
    contact_phone: Optional[str],
    system_prompt: Optional[str],
    reuse_window: Union[timedelta, int],
    *,
    now: Optional[datetime] = None,
) -> tuple[ConversationRecord, bool]:
    """Return (record, created).

    Creation retires stale active rows for the contact and inserts with
    ON CONFLICT DO NOTHING against the one-active-per-contact index, so
    concurrent callers converge on a single record.
    """
    now = now or utcnow()
    window = _window(reuse_window)

    existing = run_with_retry(
        db,
        lambda: find_reusable_conversation(db, tenant_id, contact_id, window, now=now),
        description="find_reusable_conversation",
    )
    if existing:
        return existing, False

    conversation_id = new_conversation_id()
    seed = []
    if system_prompt:
        seed.append({"role": "system", "content": system_prompt, "timestamp": now.isoformat()})

    def _create() -> ConversationRecord:
        db.execute(
            update(ConversationRecord)
            .where(
                ConversationRecord.tenant_id == tenant_id,
                ConversationRecord.contact_id == contact_id,
                ConversationRecord.is_active.is_(True),
                or_(
                    ConversationRecord.expires_at <= now,
                    ConversationRecord.last_activity_at <= now - window,
                ),
            )
            .values(is_active=False, closed_at=now)
            .execution_options(synchronize_session=False)
        )
        stmt = (
            dialect_insert(db, ConversationRecord)
            .values(
                id=conversation_id,
                tenant_id=tenant_id,
                contact_id=contact_id,
                contact_phone=contact_phone,
                system_prompt=system_prompt,
                messages=seed,
                message_count=0,
                total_tokens_used=0,
                created_at=now,
                last_activity_at=now,
                expires_at=now + window,
                is_active=True,
            )
            .on_conflict_do_nothing()
        )
        db.execute(stmt)
        return (
            _active_query(db, tenant_id, contact_id)
            .order_by(ConversationRecord.created_at.desc())
            .populate_existing()
            .first()
        )

    record = run_with_retry(db, _create, description="get_or_create_conversation")
    created = record.id == conversation_id
    if created:
        logger.info(
            "Conversation created",
            extra={
                "context": {
                    "tenant_id": tenant_id,
                    "conversation_id": record.id,
                    "window_minutes": int(window.total_seconds() // 60),
                }
            },
        )
    return record, created


def _append(
    db: Session, record: ConversationRecord, message: dict, tokens_used: int, now: datetime
) -> ConversationRecord:
    def _write() -> ConversationRecord:
        row = (
            db.query(ConversationRecord)
            .filter(ConversationRecord.id == record.id, ConversationRecord.tenant_id == record.tenant_id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        row.messages = [*(row.messages or []), message]
        if message["role"] in COUNTED_ROLES:
            row.message_count = (row.message_count or 0) + 1
        row.total_tokens_used = (row.total_tokens_used or 0) + max(tokens_used, 0)
        row.last_activity_at = now
        db.flush()
        return row

    return run_with_retry(db, _write, description="append_message")


def append_user_message(
    db: Session, record: ConversationRecord, text: str, *, now: Optional[datetime] = None
) -> ConversationRecord:
    now = now or utcnow()
    return _append(db, record, {"role": "user", "content": text, "timestamp": now.isoformat()}, 0, now)


def append_assistant_message(
    db: Session,
    record: ConversationRecord,
    text: str,
    tokens_used: int = 0,
    *,
    now: Optional[datetime] = None,
) -> ConversationRecord:
    now = now or utcnow()
    message = {"role": "assistant", "content": text, "timestamp": now.isoformat(), "tokens_used": tokens_used}
    return _append(db, record, message, tokens_used, now)


def close_conversation(
    db: Session, record: ConversationRecord, *, now: Optional[datetime] = None
) -> ConversationRecord:
    """Explicit termination, distinct from natural expiry."""
    now = now or utcnow()

    def _close() -> ConversationRecord:
        record.is_active = False
        record.expires_at = now
        record.closed_at = now
        db.flush()
        return record

    closed = run_with_retry(db, _close, description="close_conversation")
    logger.info(
        "Conversation closed",
        extra={"context": {"tenant_id": closed.tenant_id, "conversation_id": closed.id}},
    )
    return closed


def sweep_expired_conversations(db: Session, *, now: Optional[datetime] = None) -> int:
    """Deactivate every active record whose expiry has passed."""
    now = now or utcnow()

    def _sweep() -> int:
        result = db.execute(
            update(ConversationRecord)
            .where(ConversationRecord.is_active.is_(True), ConversationRecord.expires_at <= now)
            .values(is_active=False, closed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    return run_with_retry(db, _sweep, description="sweep_expired_conversations")


# === REMOTE THREAD CLAIMS ===


def claim_thread_creation(
    db: Session,
    record: ConversationRecord,
    token: str,
    *,
    claim_ttl_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Take the right to create the remote thread for this record.

    Succeeds only while no thread is stored and no other live claim exists.
    A claim older than the TTL is considered abandoned and can be taken over.
    """
    now = now or utcnow()
    ttl = timedelta(seconds=claim_ttl_seconds or settings.thread_claim_ttl_seconds)

    def _claim() -> bool:
        result = db.execute(
            update(ConversationRecord)
            .where(
                ConversationRecord.id == record.id,
                ConversationRecord.tenant_id == record.tenant_id,
                ConversationRecord.remote_thread_id.is_(None),
                or_(
                    ConversationRecord.thread_claim_token.is_(None),
                    ConversationRecord.thread_claimed_at <= now - ttl,
                ),
            )
            .values(thread_claim_token=token, thread_claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    return run_with_retry(db, _claim, description="claim_thread_creation")


def confirm_remote_thread(db: Session, record: ConversationRecord, token: str, remote_thread_id: str) -> bool:
    """Store the thread id if we still hold the claim. False means we lost it."""

    def _confirm() -> bool:
        result = db.execute(
            update(ConversationRecord)
            .where(
                ConversationRecord.id == record.id,
                ConversationRecord.tenant_id == record.tenant_id,
                ConversationRecord.thread_claim_token == token,
                ConversationRecord.remote_thread_id.is_(None),
            )
            .values(remote_thread_id=remote_thread_id, thread_claim_token=None, thread_claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    return run_with_retry(db, _confirm, description="confirm_remote_thread")


def release_thread_claim(db: Session, record: ConversationRecord, token: str) -> None:
    def _release() -> None:
        db.execute(
            update(ConversationRecord)
            .where(
                ConversationRecord.id == record.id,
                ConversationRecord.tenant_id == record.tenant_id,
                ConversationRecord.thread_claim_token == token,
            )
            .values(thread_claim_token=None, thread_claimed_at=None)
            .execution_options(synchronize_session=False)
        )

    run_with_retry(db, _release, description="release_thread_claim")


def load_remote_thread_id(db: Session, record: ConversationRecord) -> Optional[str]:
    """Read the stored thread id straight from the database."""

    def _load() -> Optional[str]:
        return (
            db.query(ConversationRecord.remote_thread_id)
            .filter(ConversationRecord.id == record.id, ConversationRecord.tenant_id == record.tenant_id)
            .scalar()
        )

    return run_with_retry(db, _load, description="load_remote_thread_id")


def discard_remote_thread(db: Session, record: ConversationRecord, remote_thread_id: str) -> None:
    """Forget a thread that missed the current turn, so the next turn starts a new one."""

    def _discard() -> None:
        db.execute(
            update(ConversationRecord)
            .where(
                ConversationRecord.id == record.id,
                ConversationRecord.tenant_id == record.tenant_id,
                ConversationRecord.remote_thread_id == remote_thread_id,
            )
            .values(remote_thread_id=None)
            .execution_options(synchronize_session=False)
        )

    run_with_retry(db, _discard, description="discard_remote_thread")


# === VIEWS ===


def messages_for_api(record: ConversationRecord, include_system: bool = True) -> list[dict]:
    """Stored history as role/content pairs for a chat completion."""
    messages = []
    for message in record.messages or []:
        if message.get("role") == "system" and not include_system:
            continue
        messages.append({"role": message["role"], "content": message.get("content") or ""})
    return messages


def get_conversation_stats(record: ConversationRecord) -> dict:
    duration = record.last_activity_at - record.created_at
    return {
        "conversation_id": record.id,
        "message_count": record.message_count or 0,
        "total_tokens": record.total_tokens_used or 0,
        "duration_minutes": int(duration.total_seconds() // 60),
        "is_active": bool(record.is_active),
        "has_remote_thread": record.remote_thread_id is not None,
        "created_at": record.created_at.isoformat(),
        "expires_at": record.expires_at.isoformat(),
    }
