import uuid

from sqlalchemy import Boolean, Column, Float, Integer, Text, Uuid
from sqlalchemy.sql import func

from app.database import Base, UTCDateTime


class Assistant(Base):
    __tablename__ = "assistants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=False)
    system_instructions = Column(Text, nullable=False, default="")
    knowledge_base = Column(Text)
    model = Column(Text)
    temperature = Column(Float)
    max_tokens = Column(Integer)
    remote_assistant_id = Column(Text)  # set when a stateful assistant exists upstream
    threading_enabled = Column(Boolean, nullable=False, default=True)
    reuse_window_minutes = Column(Integer)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())

    def full_system_context(self) -> str:
        """Instructions followed by the knowledge base block, if any."""
        context = self.system_instructions or ""
        if self.knowledge_base:
            context += "\n\n=== KNOWLEDGE BASE ===\n" + self.knowledge_base + "\n=== END KNOWLEDGE BASE ===\n"
        return context
