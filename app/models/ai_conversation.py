from sqlalchemy import Boolean, Column, Index, Integer, Text, text

from app.database import Base, JSONType, UTCDateTime


class ConversationRecord(Base):
    __tablename__ = "ai_conversations"
    __table_args__ = (
        Index(
            "uq_ai_conversations_active_contact",
            "tenant_id",
            "contact_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(Text, primary_key=True)  # conv_<hex>
    tenant_id = Column(Text, nullable=False, index=True)
    contact_id = Column(Text, nullable=False)
    contact_phone = Column(Text)
    remote_thread_id = Column(Text)
    thread_claim_token = Column(Text)
    thread_claimed_at = Column(UTCDateTime)
    system_prompt = Column(Text)
    messages = Column(JSONType, nullable=False, default=list)
    message_count = Column(Integer, nullable=False, default=0)
    total_tokens_used = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False)
    last_activity_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    closed_at = Column(UTCDateTime)
