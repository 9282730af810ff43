import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import utcnow
from app.logging_config import get_logger
from app.models import Order, Product

logger = get_logger("order_service")

PAYMENT_METHOD_LABELS = {
    "cod": "Cash on Delivery",
    "bank_transfer": "Bank Transfer",
    "card": "Credit/Debit Card",
    "online": "Online Payment",
}


class OrderCreationError(Exception):
    pass


@dataclass
class ProductInfo:
    sku: str
    name: str
    unit_price: Decimal
    stock: int


def find_product(db: Session, tenant_id: str, sku: str) -> Optional[ProductInfo]:
    """Active product of this tenant by SKU, case-insensitive."""
    product = (
        db.query(Product)
        .filter(
            Product.tenant_id == tenant_id,
            func.lower(Product.sku) == sku.strip().lower(),
            Product.is_active.is_(True),
        )
        .first()
    )
    if not product:
        return None
    return ProductInfo(
        sku=product.sku,
        name=product.name,
        unit_price=Decimal(product.price),
        stock=product.stock_quantity or 0,
    )


def build_order_number(sku: str, now: datetime) -> str:
    return f"ORD-{int(now.timestamp())}-{sku}-{uuid.uuid4().hex[:4].upper()}"


def create_order(
    db: Session,
    tenant_id: str,
    contact_id: str,
    product_id: str,
    quantity: int,
    payment_method: str = "cod",
    now: Optional[datetime] = None,
) -> str:
    """Create a pending order and take the quantity out of stock.

    product_id is the tenant-scoped SKU. Returns the order number.
    Raises OrderCreationError if the product is gone or stock is short.
    """
    now = now or utcnow()
    try:
        product = (
            db.query(Product)
            .filter(
                Product.tenant_id == tenant_id,
                func.lower(Product.sku) == product_id.lower(),
                Product.is_active.is_(True),
            )
            .with_for_update()
            .first()
        )
        if not product:
            raise OrderCreationError(f"Product {product_id} is not available")
        if (product.stock_quantity or 0) < quantity:
            raise OrderCreationError(f"Only {product.stock_quantity} of {product.name} left in stock")

        unit_price = Decimal(product.price)
        order = Order(
            tenant_id=tenant_id,
            contact_id=contact_id,
            order_number=build_order_number(product.sku, now),
            product_sku=product.sku,
            quantity=quantity,
            unit_price=unit_price,
            total_amount=unit_price * quantity,
            payment_method=payment_method,
            status="pending",
            created_at=now,
        )
        db.add(order)
        product.stock_quantity = product.stock_quantity - quantity
        order_number = order.order_number
        db.commit()
    except OrderCreationError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Order creation failed",
            extra={"context": {"tenant_id": tenant_id, "product_id": product_id, "error": str(e)}},
        )
        raise OrderCreationError("Could not save the order") from e

    logger.info(
        "Order created",
        extra={
            "context": {
                "tenant_id": tenant_id,
                "order_number": order_number,
                "quantity": quantity,
                "payment_method": payment_method,
            }
        },
    )
    return order_number
