import uuid

from sqlalchemy import Column, Text, UniqueConstraint, Uuid

from app.database import Base, UTCDateTime


class InboundReceipt(Base):
    __tablename__ = "inbound_receipts"
    __table_args__ = (UniqueConstraint("tenant_id", "message_id", name="uq_inbound_receipts_message"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False)
    message_id = Column(Text, nullable=False)
    contact_id = Column(Text)
    received_at = Column(UTCDateTime, nullable=False)
