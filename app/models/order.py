import uuid

from sqlalchemy import Column, Integer, Numeric, Text, Uuid
from sqlalchemy.sql import func

from app.database import Base, UTCDateTime


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    contact_id = Column(Text, nullable=False)
    order_number = Column(Text, nullable=False, unique=True)
    product_sku = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(Text, nullable=False, default="cod")
    status = Column(Text, nullable=False, default="pending")  # pending, paid, cancelled
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())
