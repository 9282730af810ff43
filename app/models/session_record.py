import uuid

from sqlalchemy import Column, Text, UniqueConstraint, Uuid
from sqlalchemy.sql import func

from app.database import Base, JSONType, UTCDateTime


class SessionRecord(Base):
    __tablename__ = "session_records"
    __table_args__ = (UniqueConstraint("tenant_id", "contact_id", "kind", name="uq_session_records_key"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    contact_id = Column(Text, nullable=False)
    kind = Column(Text, nullable=False)  # order_flow, ...
    contact_phone = Column(Text)
    current_step = Column(Text, nullable=False, default="idle")
    data = Column(JSONType, nullable=False, default=dict)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, server_default=func.now())
