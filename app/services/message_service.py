"""Inbound message orchestration: de-duplication, order flow, then AI."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from app.config import settings
from app.database import dialect_insert, utcnow
from app.logging_config import get_logger, tenant_logger
from app.models import Assistant, InboundReceipt, TenantSettings
from app.services.llm import OpenAIProvider, OpenAIThreadsProvider
from app.services.order_flow import OrderFlow
from app.services.order_service import create_order, find_product
from app.services.session_store import SessionStoreError, run_with_retry
from app.services.thread_resolver import UNAVAILABLE_MESSAGE, AssistantConfig, ThreadContinuityResolver

logger = get_logger("message_service")

STATUS_OK = "ok"
STATUS_DUPLICATE = "duplicate"
STATUS_ERROR = "error"

HANDLED_BY_ORDER_FLOW = "order_flow"
HANDLED_BY_AI = "ai"
HANDLED_BY_NONE = "none"

DEFAULT_SYSTEM_PROMPT = "You are a friendly shop assistant. Answer briefly and help the customer place orders."
MSG_ERROR = "Sorry, something went wrong. Please try again later."

PROVIDER_CACHE_SIZE = 32


@dataclass
class InboundMessage:
    tenant_id: str
    contact_id: str
    text: str
    contact_phone: Optional[str] = None
    reply_to_message_id: Optional[str] = None
    message_id: Optional[str] = None
    history: Optional[list[dict]] = None


@dataclass
class InboundReply:
    status: str
    handled_by: str
    reply: Optional[str] = None
    step: Optional[str] = None
    conversation_id: Optional[str] = None
    backend: Optional[str] = None


def record_inbound_receipt(
    db: Session,
    tenant_id: str,
    message_id: str,
    contact_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """True the first time (tenant_id, message_id) is seen, False for a redelivery."""
    now = now or utcnow()

    def _insert() -> bool:
        stmt = (
            dialect_insert(db, InboundReceipt)
            .values(tenant_id=tenant_id, message_id=message_id, contact_id=contact_id, received_at=now)
            .on_conflict_do_nothing(index_elements=["tenant_id", "message_id"])
        )
        result = db.execute(stmt)
        return result.rowcount > 0

    return run_with_retry(db, _insert, description="record_inbound_receipt")


def forget_inbound_receipt(db: Session, tenant_id: str, message_id: str) -> None:
    """Drop a receipt so a redelivery of an unprocessed message is handled again."""

    def _delete() -> None:
        db.execute(
            delete(InboundReceipt)
            .where(InboundReceipt.tenant_id == tenant_id, InboundReceipt.message_id == message_id)
            .execution_options(synchronize_session=False)
        )

    run_with_retry(db, _delete, description="forget_inbound_receipt")


def sweep_inbound_receipts(db: Session, *, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.inbound_receipt_ttl_hours)

    def _sweep() -> int:
        result = db.execute(
            delete(InboundReceipt)
            .where(InboundReceipt.received_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    return run_with_retry(db, _sweep, description="sweep_inbound_receipts")


def get_tenant_settings(db: Session, tenant_id: str) -> Optional[TenantSettings]:
    return db.query(TenantSettings).filter(TenantSettings.tenant_id == tenant_id).first()


def get_active_assistant(db: Session, tenant_id: str) -> Optional[Assistant]:
    return (
        db.query(Assistant)
        .filter(Assistant.tenant_id == tenant_id, Assistant.is_active.is_(True))
        .order_by(Assistant.created_at.desc())
        .first()
    )


def default_assistant_config() -> AssistantConfig:
    return AssistantConfig(
        system_prompt=DEFAULT_SYSTEM_PROMPT,
        model=settings.default_model,
        temperature=settings.default_temperature,
        max_tokens=settings.default_max_tokens,
        reuse_window_minutes=settings.chat_reuse_window_minutes,
        threading_enabled=False,
    )


def _load_tenant_settings(db: Session, tenant_id: str, log) -> Optional[TenantSettings]:
    try:
        return run_with_retry(db, lambda: get_tenant_settings(db, tenant_id), description="get_tenant_settings")
    except SessionStoreError as e:
        log.warning("Tenant settings unavailable, using defaults", context={"error": str(e)})
        return None


def _load_assistant_config(db: Session, tenant_id: str, log) -> AssistantConfig:
    try:
        assistant = run_with_retry(db, lambda: get_active_assistant(db, tenant_id), description="get_active_assistant")
    except SessionStoreError as e:
        log.warning("Assistant unavailable, using default config", context={"error": str(e)})
        return default_assistant_config()
    return AssistantConfig.from_assistant(assistant) if assistant else default_assistant_config()


@lru_cache(maxsize=PROVIDER_CACHE_SIZE)
def get_providers(api_key: str) -> tuple[OpenAIProvider, OpenAIThreadsProvider]:
    """Provider pair for an API key, kept for the most recently used keys."""
    return OpenAIProvider(api_key), OpenAIThreadsProvider(api_key)


def build_order_flow(db: Session, tenant_settings: Optional[TenantSettings]) -> OrderFlow:
    payment_methods = tenant_settings.payment_methods() if tenant_settings else None

    def _catalog(tenant_id: str, sku: str):
        try:
            return run_with_retry(db, lambda: find_product(db, tenant_id, sku), description="find_product")
        except SessionStoreError as e:
            logger.warning(
                "Catalog unavailable, treating product as missing",
                extra={"context": {"tenant_id": tenant_id, "sku": sku, "error": str(e)}},
            )
            return None

    return OrderFlow(
        db,
        catalog=_catalog,
        create_order=lambda tenant_id, contact_id, product_id, quantity, method: create_order(
            db, tenant_id, contact_id, product_id, quantity, method
        ),
        payment_methods=payment_methods,
        currency=(tenant_settings.currency if tenant_settings else None) or "USD",
        ttl_minutes=tenant_settings.order_session_ttl_minutes if tenant_settings else None,
    )


def build_resolver(db: Session, api_key: str) -> ThreadContinuityResolver:
    completions, threads = get_providers(api_key)
    return ThreadContinuityResolver(db, completions, threads)


def handle_inbound_message(
    db: Session,
    message: InboundMessage,
    *,
    order_flow: Optional[OrderFlow] = None,
    resolver: Optional[ThreadContinuityResolver] = None,
) -> InboundReply:
    """Answer one inbound message. Always returns a reply, never raises."""
    log = tenant_logger(logger, message.tenant_id, contact_id=message.contact_id)
    receipt_recorded = False

    try:
        if message.message_id:
            try:
                is_new = record_inbound_receipt(db, message.tenant_id, message.message_id, message.contact_id)
                receipt_recorded = is_new
            except SessionStoreError as e:
                log.warning("Could not record inbound receipt", context={"error": str(e)})
                is_new = True
            if not is_new:
                log.info("Duplicate inbound message ignored", context={"message_id": message.message_id})
                return InboundReply(status=STATUS_DUPLICATE, handled_by=HANDLED_BY_NONE)

        tenant_settings = _load_tenant_settings(db, message.tenant_id, log)

        flow = order_flow or build_order_flow(db, tenant_settings)
        flow_reply = flow.handle(message.tenant_id, message.contact_id, message.text, message.contact_phone)
        if flow_reply.handled:
            return InboundReply(
                status=STATUS_OK,
                handled_by=HANDLED_BY_ORDER_FLOW,
                reply=flow_reply.reply,
                step=flow_reply.step.value,
            )

        config = _load_assistant_config(db, message.tenant_id, log)

        if resolver is None:
            api_key = (tenant_settings.openai_api_key if tenant_settings else None) or settings.openai_api_key
            if not api_key:
                log.error("No OpenAI API key configured for tenant")
                return InboundReply(status=STATUS_OK, handled_by=HANDLED_BY_NONE, reply=UNAVAILABLE_MESSAGE)
            resolver = build_resolver(db, api_key)

        resolved = resolver.resolve(
            message.tenant_id,
            message.contact_id,
            message.contact_phone,
            message.text,
            config,
            history=message.history,
        )
        return InboundReply(
            status=STATUS_OK,
            handled_by=HANDLED_BY_AI,
            reply=resolved.text,
            step=flow_reply.step.value,
            conversation_id=resolved.conversation_id,
            backend=resolved.backend,
        )

    except Exception as e:
        db.rollback()
        log.error("Inbound message handling failed", context={"error": str(e)}, exc_info=True)
        if receipt_recorded:
            try:
                forget_inbound_receipt(db, message.tenant_id, message.message_id)
            except SessionStoreError as store_error:
                log.warning(
                    "Could not drop inbound receipt, redelivery will be ignored",
                    context={"message_id": message.message_id, "error": str(store_error)},
                )
        return InboundReply(status=STATUS_ERROR, handled_by=HANDLED_BY_NONE, reply=MSG_ERROR)
