"""Step-based purchase flow on top of the session store.

The flow is consulted before the AI for every inbound message. Input that
matches no edge of the current step re-prompts and leaves the session alone.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger, tenant_logger
from app.models import SessionRecord
from app.services.order_service import PAYMENT_METHOD_LABELS, OrderCreationError, ProductInfo
from app.services.session_store import (
    ORDER_FLOW_KIND,
    SessionStoreError,
    clear_session,
    compare_and_set_step,
    ephemeral_session,
    get_or_create_session,
    update_step,
)
from app.services.state_machine import OrderStep, coerce_step, transition

logger = get_logger("order_flow")

CatalogLookup = Callable[[str, str], Optional[ProductInfo]]
OrderCreator = Callable[[str, str, str, int, str], str]

SELECT_PATTERN = re.compile(r"^\s*(?:select|buy|order)\s+([\w\-.]+)\s*$", re.IGNORECASE)
NUMERIC_PATTERN = re.compile(r"^[+-]?\d+(?:[.,]\d+)?$")
INTEGER_PATTERN = re.compile(r"^\+?\d+$")

CANCEL_WORDS = {"cancel", "stop", "quit"}
CUSTOM_QTY_WORDS = {"custom", "other", "more"}
CONFIRM_WORDS = {"confirm", "yes", "ok", "y"}
EDIT_WORDS = {"edit", "change", "back"}
PAYMENT_ALIASES = {
    "cash": "cod",
    "cash_on_delivery": "cod",
    "bank": "bank_transfer",
    "transfer": "bank_transfer",
    "credit_card": "card",
    "debit_card": "card",
}

MSG_PRODUCT_NOT_FOUND = "Sorry, I couldn't find product *{sku}*. Please check the code and try again."
MSG_OUT_OF_STOCK = "Sorry, *{name}* is out of stock right now."
MSG_ASK_QUANTITY = (
    "*{name}* costs {price} {currency}. {stock} in stock.\n\n"
    "How many would you like? Reply with a number, or *custom* for a larger amount.\n"
    "Reply *cancel* to stop."
)
MSG_ASK_CUSTOM_QUANTITY = "Please type the quantity you need (up to {stock})."
MSG_INVALID_QUANTITY = "Please reply with a whole number greater than zero."
MSG_EXCEEDS_STOCK = "Sorry, only {stock} available. Please choose a smaller quantity."
MSG_INVOICE = (
    "*Order summary*\n"
    "{name} x {quantity}\n"
    "Unit price: {price} {currency}\n"
    "*Total: {total} {currency}*\n\n"
    "Reply *confirm* to continue or *edit* to change the quantity."
)
MSG_ASK_PAYMENT = "How would you like to pay?\n{options}"
MSG_ORDER_PLACED = "Thank you! Your order *{reference}* has been placed. We'll be in touch shortly."
MSG_ORDER_FAILED = "Sorry, we couldn't place your order: {reason}. Please start again."
MSG_ORDER_IN_PROGRESS = "Your order is already being processed."
MSG_PRODUCT_GONE = "Sorry, this product is no longer available."
MSG_CANCELLED = "Order cancelled. Let me know if you need anything else."
MSG_STORE_UNAVAILABLE = "Sorry, we can't take orders right now. Please try again in a few minutes."


@dataclass
class OrderFlowReply:
    handled: bool
    step: OrderStep
    reply: Optional[str] = None
    order_reference: Optional[str] = None


def parse_quantity(text: str) -> Optional[int]:
    """Positive whole number, or None for anything else."""
    value = (text or "").strip()
    if not INTEGER_PATTERN.match(value):
        return None
    quantity = int(value)
    return quantity if quantity > 0 else None


def looks_numeric(text: str) -> bool:
    return bool(NUMERIC_PATTERN.match((text or "").strip()))


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def _money(value: Decimal) -> str:
    return f"{Decimal(value).quantize(Decimal('0.01'))}"


class OrderFlow:
    def __init__(
        self,
        db: Session,
        catalog: CatalogLookup,
        create_order: OrderCreator,
        payment_methods: Optional[list[str]] = None,
        currency: str = "USD",
        ttl_minutes: Optional[int] = None,
    ):
        self.db = db
        self.catalog = catalog
        self.create_order = create_order
        self.payment_methods = payment_methods or ["cod", "bank_transfer"]
        self.currency = currency
        self.ttl_minutes = ttl_minutes

    def handle(
        self,
        tenant_id: str,
        contact_id: str,
        text: str,
        contact_phone: Optional[str] = None,
    ) -> OrderFlowReply:
        log = tenant_logger(logger, tenant_id, contact_id=contact_id)
        try:
            record = get_or_create_session(
                self.db,
                tenant_id,
                contact_id,
                ORDER_FLOW_KIND,
                contact_phone=contact_phone,
                ttl_minutes=self.ttl_minutes,
            )
        except SessionStoreError as e:
            log.warning("Session store unavailable, using ephemeral session", context={"error": str(e)})
            record = ephemeral_session(tenant_id, contact_id, ORDER_FLOW_KIND, ttl_minutes=self.ttl_minutes)

        step = coerce_step(record.current_step)
        try:
            return self._dispatch(record, step, tenant_id, contact_id, text, log)
        except SessionStoreError as e:
            log.error("Order flow could not persist session", context={"error": str(e)})
            return OrderFlowReply(handled=True, step=step, reply=MSG_STORE_UNAVAILABLE)

    def _dispatch(
        self, record: SessionRecord, step: OrderStep, tenant_id: str, contact_id: str, text: str, log
    ) -> OrderFlowReply:
        normalized = _normalize(text)

        if step == OrderStep.COMPLETED:
            record = clear_session(self.db, record, ttl_minutes=self.ttl_minutes)
            step = OrderStep.IDLE

        if step != OrderStep.IDLE and normalized in CANCEL_WORDS:
            clear_session(self.db, record, ttl_minutes=self.ttl_minutes)
            log.info("Order cancelled", context={"from_step": step.value})
            return OrderFlowReply(handled=True, step=OrderStep.IDLE, reply=MSG_CANCELLED)

        if step == OrderStep.IDLE:
            return self._on_idle(record, tenant_id, text, log)
        if step in (OrderStep.QUANTITY_SELECTION, OrderStep.AWAITING_CUSTOM_QTY):
            return self._on_quantity(record, step, tenant_id, normalized)
        if step == OrderStep.INVOICE_REVIEW:
            return self._on_invoice_review(record, tenant_id, normalized)
        return self._on_payment(record, tenant_id, contact_id, normalized, log)

    def _move(self, record: SessionRecord, from_step: OrderStep, to_step: OrderStep, patch: Optional[dict] = None):
        next_step = transition(from_step, to_step)
        return update_step(self.db, record, next_step, patch, ttl_minutes=self.ttl_minutes)

    def _current_product(self, record: SessionRecord, tenant_id: str) -> Optional[ProductInfo]:
        sku = (record.data or {}).get("product_id")
        if not sku:
            return None
        return self.catalog(tenant_id, sku)

    def _product_gone(self, record: SessionRecord) -> OrderFlowReply:
        clear_session(self.db, record, ttl_minutes=self.ttl_minutes)
        return OrderFlowReply(handled=True, step=OrderStep.IDLE, reply=MSG_PRODUCT_GONE)

    # === STEPS ===

    def _on_idle(self, record: SessionRecord, tenant_id: str, text: str, log) -> OrderFlowReply:
        match = SELECT_PATTERN.match(text or "")
        if not match:
            return OrderFlowReply(handled=False, step=OrderStep.IDLE)

        sku = match.group(1)
        product = self.catalog(tenant_id, sku)
        if not product:
            return OrderFlowReply(handled=True, step=OrderStep.IDLE, reply=MSG_PRODUCT_NOT_FOUND.format(sku=sku))
        if product.stock < 1:
            return OrderFlowReply(handled=True, step=OrderStep.IDLE, reply=MSG_OUT_OF_STOCK.format(name=product.name))

        self._move(
            record,
            OrderStep.IDLE,
            OrderStep.QUANTITY_SELECTION,
            {"product_id": product.sku, "product_name": product.name, "unit_price": _money(product.unit_price)},
        )
        log.info("Product selected", context={"product_id": product.sku})
        return OrderFlowReply(
            handled=True,
            step=OrderStep.QUANTITY_SELECTION,
            reply=MSG_ASK_QUANTITY.format(
                name=product.name,
                price=_money(product.unit_price),
                currency=self.currency,
                stock=product.stock,
            ),
        )

    def _on_quantity(self, record: SessionRecord, step: OrderStep, tenant_id: str, normalized: str) -> OrderFlowReply:
        product = self._current_product(record, tenant_id)
        if not product:
            return self._product_gone(record)

        if step == OrderStep.QUANTITY_SELECTION and normalized in CUSTOM_QTY_WORDS:
            self._move(record, step, OrderStep.AWAITING_CUSTOM_QTY)
            return OrderFlowReply(
                handled=True,
                step=OrderStep.AWAITING_CUSTOM_QTY,
                reply=MSG_ASK_CUSTOM_QUANTITY.format(stock=product.stock),
            )

        quantity = parse_quantity(normalized)
        if quantity is None:
            reply = MSG_INVALID_QUANTITY
            if not looks_numeric(normalized) and step == OrderStep.QUANTITY_SELECTION:
                reply = MSG_ASK_QUANTITY.format(
                    name=product.name,
                    price=_money(product.unit_price),
                    currency=self.currency,
                    stock=product.stock,
                )
            return OrderFlowReply(handled=True, step=step, reply=reply)

        if quantity > product.stock:
            if step == OrderStep.AWAITING_CUSTOM_QTY:
                update_step(
                    self.db,
                    record,
                    step,
                    {"qty_error": "exceeds_stock", "requested_quantity": quantity},
                    ttl_minutes=self.ttl_minutes,
                )
            return OrderFlowReply(handled=True, step=step, reply=MSG_EXCEEDS_STOCK.format(stock=product.stock))

        self._move(record, step, OrderStep.INVOICE_REVIEW, {"quantity": quantity, "qty_error": None})
        return OrderFlowReply(
            handled=True,
            step=OrderStep.INVOICE_REVIEW,
            reply=self._invoice(product, quantity),
        )

    def _invoice(self, product: ProductInfo, quantity: int) -> str:
        return MSG_INVOICE.format(
            name=product.name,
            quantity=quantity,
            price=_money(product.unit_price),
            total=_money(product.unit_price * quantity),
            currency=self.currency,
        )

    def _payment_options(self) -> str:
        return "\n".join(
            f"{index}. *{method}* - {PAYMENT_METHOD_LABELS.get(method, method)}"
            for index, method in enumerate(self.payment_methods, start=1)
        )

    def _on_invoice_review(self, record: SessionRecord, tenant_id: str, normalized: str) -> OrderFlowReply:
        if normalized in CONFIRM_WORDS:
            self._move(record, OrderStep.INVOICE_REVIEW, OrderStep.PAYMENT_SELECTION)
            return OrderFlowReply(
                handled=True,
                step=OrderStep.PAYMENT_SELECTION,
                reply=MSG_ASK_PAYMENT.format(options=self._payment_options()),
            )

        product = self._current_product(record, tenant_id)
        if not product:
            return self._product_gone(record)

        if normalized in EDIT_WORDS:
            self._move(record, OrderStep.INVOICE_REVIEW, OrderStep.QUANTITY_SELECTION)
            return OrderFlowReply(
                handled=True,
                step=OrderStep.QUANTITY_SELECTION,
                reply=MSG_ASK_QUANTITY.format(
                    name=product.name,
                    price=_money(product.unit_price),
                    currency=self.currency,
                    stock=product.stock,
                ),
            )

        quantity = (record.data or {}).get("quantity") or 1
        return OrderFlowReply(handled=True, step=OrderStep.INVOICE_REVIEW, reply=self._invoice(product, quantity))

    def _resolve_payment_method(self, normalized: str) -> Optional[str]:
        token = normalized.replace(" ", "_").replace("-", "_")
        if token.isdigit():
            index = int(token) - 1
            return self.payment_methods[index] if 0 <= index < len(self.payment_methods) else None
        token = PAYMENT_ALIASES.get(token, token)
        return token if token in self.payment_methods else None

    def _on_payment(
        self, record: SessionRecord, tenant_id: str, contact_id: str, normalized: str, log
    ) -> OrderFlowReply:
        method = self._resolve_payment_method(normalized)
        if not method:
            return OrderFlowReply(
                handled=True,
                step=OrderStep.PAYMENT_SELECTION,
                reply=MSG_ASK_PAYMENT.format(options=self._payment_options()),
            )

        claimed = compare_and_set_step(
            self.db,
            record,
            OrderStep.PAYMENT_SELECTION,
            transition(OrderStep.PAYMENT_SELECTION, OrderStep.COMPLETED),
            {"payment_method": method},
            ttl_minutes=self.ttl_minutes,
        )
        if claimed is None:
            log.info("Payment already being processed by another request")
            return OrderFlowReply(handled=True, step=OrderStep.COMPLETED, reply=MSG_ORDER_IN_PROGRESS)

        data = claimed.data or {}
        try:
            reference = self.create_order(tenant_id, contact_id, data["product_id"], int(data["quantity"]), method)
        except OrderCreationError as e:
            log.warning("Order creation rejected", context={"error": str(e)})
            clear_session(self.db, claimed, ttl_minutes=self.ttl_minutes)
            return OrderFlowReply(handled=True, step=OrderStep.IDLE, reply=MSG_ORDER_FAILED.format(reason=e))

        try:
            update_step(
                self.db, claimed, OrderStep.COMPLETED, {"order_reference": reference}, ttl_minutes=self.ttl_minutes
            )
        except SessionStoreError as e:
            log.warning("Order placed but reference not saved", context={"order_reference": reference, "error": str(e)})
        log.info("Order completed", context={"order_reference": reference, "payment_method": method})
        return OrderFlowReply(
            handled=True,
            step=OrderStep.COMPLETED,
            reply=MSG_ORDER_PLACED.format(reference=reference),
            order_reference=reference,
        )
