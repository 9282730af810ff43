"""Tenant-scoped session records with a sliding TTL.

Every read and write is filtered by tenant_id. Creation goes through a single
INSERT .. ON CONFLICT statement keyed by (tenant_id, contact_id, kind), so two
concurrent deliveries for one contact can never end up with two live records.
"""

import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, TypeVar

from sqlalchemy import delete, update
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import dialect_insert, utcnow
from app.logging_config import get_logger
from app.models import SessionRecord

logger = get_logger("session_store")

T = TypeVar("T")

ORDER_FLOW_KIND = "order_flow"
IDLE_STEP = "idle"


class SessionStoreError(Exception):
    """Persistence is unavailable, or the record cannot be persisted."""


def _is_transient(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def _ttl(ttl_minutes: Optional[int]) -> timedelta:
    return timedelta(minutes=ttl_minutes or settings.order_session_ttl_minutes)


def _step_value(step) -> str:
    return getattr(step, "value", step)


def run_with_retry(
    db: Session,
    operation: Callable[[], T],
    *,
    description: str,
    attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run operation and commit, retrying transient database errors.

    Non-transient errors, and transient ones that outlive the retry budget,
    are rolled back and raised as SessionStoreError.
    """
    attempts = attempts or settings.store_retry_attempts
    backoff = settings.store_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
    last_error: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        try:
            result = operation()
            db.commit()
            return result
        except SessionStoreError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            if not _is_transient(exc):
                raise SessionStoreError(f"{description} failed: {exc}") from exc
            last_error = exc
            logger.warning(
                "Transient store error, retrying",
                extra={"context": {"operation": description, "attempt": attempt, "error": str(exc)}},
            )
            if attempt < attempts:
                sleep(backoff * attempt)

    raise SessionStoreError(f"{description} failed after {attempts} attempts: {last_error}") from last_error


def ephemeral_session(
    tenant_id: str,
    contact_id: str,
    kind: str = ORDER_FLOW_KIND,
    *,
    ttl_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SessionRecord:
    """In-memory idle record used for a single request when the store is down."""
    now = now or utcnow()
    return SessionRecord(
        tenant_id=tenant_id,
        contact_id=contact_id,
        kind=kind,
        current_step=IDLE_STEP,
        data={},
        expires_at=now + _ttl(ttl_minutes),
    )


def is_ephemeral(record: SessionRecord) -> bool:
    return record.id is None


def get_or_create_session(
    db: Session,
    tenant_id: str,
    contact_id: str,
    kind: str = ORDER_FLOW_KIND,
    *,
    contact_phone: Optional[str] = None,
    ttl_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SessionRecord:
    """Return the live record for the key, or atomically start a fresh one.

    An expired row for the same key is reset in place to idle with empty data,
    so stale state never leaks into the new session.
    """
    now = now or utcnow()
    expires_at = now + _ttl(ttl_minutes)
    table = SessionRecord.__table__

    def _upsert() -> SessionRecord:
        stmt = dialect_insert(db, SessionRecord).values(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            contact_id=contact_id,
            kind=kind,
            contact_phone=contact_phone,
            current_step=IDLE_STEP,
            data={},
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "contact_id", "kind"],
            set_={
                "current_step": stmt.excluded.current_step,
                "data": stmt.excluded.data,
                "expires_at": stmt.excluded.expires_at,
                "created_at": stmt.excluded.created_at,
                "updated_at": stmt.excluded.updated_at,
            },
            where=table.c.expires_at <= now,
        )
        db.execute(stmt)
        return (
            db.query(SessionRecord)
            .filter(
                SessionRecord.tenant_id == tenant_id,
                SessionRecord.contact_id == contact_id,
                SessionRecord.kind == kind,
            )
            .populate_existing()
            .one()
        )

    return run_with_retry(db, _upsert, description="get_or_create_session")


def find_live_session(
    db: Session,
    tenant_id: str,
    contact_id: str,
    kind: str = ORDER_FLOW_KIND,
    *,
    now: Optional[datetime] = None,
) -> Optional[SessionRecord]:
    now = now or utcnow()
    return (
        db.query(SessionRecord)
        .filter(
            SessionRecord.tenant_id == tenant_id,
            SessionRecord.contact_id == contact_id,
            SessionRecord.kind == kind,
            SessionRecord.expires_at > now,
        )
        .first()
    )


def _lock_record(db: Session, record: SessionRecord) -> SessionRecord:
    row = (
        db.query(SessionRecord)
        .filter(SessionRecord.id == record.id, SessionRecord.tenant_id == record.tenant_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if row is None:
        raise SessionStoreError(f"Session record {record.id} no longer exists")
    return row


def update_step(
    db: Session,
    record: SessionRecord,
    new_step,
    data_patch: Optional[dict] = None,
    *,
    ttl_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SessionRecord:
    """Set the step, shallow-merge data_patch into data and refresh expiry."""
    if is_ephemeral(record):
        raise SessionStoreError("Ephemeral session cannot be persisted")
    now = now or utcnow()

    def _update() -> SessionRecord:
        row = _lock_record(db, record)
        row.data = {**(row.data or {}), **(data_patch or {})}
        row.current_step = _step_value(new_step)
        row.expires_at = now + _ttl(ttl_minutes)
        row.updated_at = now
        db.flush()
        return row

    return run_with_retry(db, _update, description="update_step")


def compare_and_set_step(
    db: Session,
    record: SessionRecord,
    expected_step,
    new_step,
    data_patch: Optional[dict] = None,
    *,
    ttl_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[SessionRecord]:
    """Move to new_step only if the stored step is still expected_step.

    Returns the updated record, or None when another request got there first.
    """
    if is_ephemeral(record):
        raise SessionStoreError("Ephemeral session cannot be persisted")
    now = now or utcnow()

    def _swap() -> Optional[SessionRecord]:
        result = db.execute(
            update(SessionRecord)
            .where(
                SessionRecord.id == record.id,
                SessionRecord.tenant_id == record.tenant_id,
                SessionRecord.current_step == _step_value(expected_step),
            )
            .values(
                current_step=_step_value(new_step),
                expires_at=now + _ttl(ttl_minutes),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        row = _lock_record(db, record)
        if data_patch:
            row.data = {**(row.data or {}), **data_patch}
            db.flush()
        return row

    return run_with_retry(db, _swap, description="compare_and_set_step")


def clear_session(
    db: Session,
    record: SessionRecord,
    *,
    ttl_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SessionRecord:
    """Back to idle with empty data. The record stays resolvable."""
    if is_ephemeral(record):
        record.current_step = IDLE_STEP
        record.data = {}
        return record
    now = now or utcnow()

    def _clear() -> SessionRecord:
        row = _lock_record(db, record)
        row.current_step = IDLE_STEP
        row.data = {}
        row.expires_at = now + _ttl(ttl_minutes)
        row.updated_at = now
        db.flush()
        return row

    return run_with_retry(db, _clear, description="clear_session")


def sweep_expired_sessions(db: Session, *, now: Optional[datetime] = None) -> int:
    """Purge every record whose expiry has passed. Returns the number removed."""
    now = now or utcnow()

    def _sweep() -> int:
        result = db.execute(
            delete(SessionRecord)
            .where(SessionRecord.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    removed = run_with_retry(db, _sweep, description="sweep_expired_sessions")
    if removed:
        logger.info("Expired sessions purged", extra={"context": {"removed": removed}})
    return removed
