from sqlalchemy import Column, Integer, Text

from app.database import Base, JSONType

DEFAULT_PAYMENT_METHODS = {"cod": True, "bank_transfer": True, "card": False, "online": False}


class TenantSettings(Base):
    __tablename__ = "tenant_settings"

    tenant_id = Column(Text, primary_key=True)
    openai_api_key = Column(Text)
    enabled_payment_methods = Column(JSONType, nullable=False, default=lambda: dict(DEFAULT_PAYMENT_METHODS))
    order_session_ttl_minutes = Column(Integer)
    currency = Column(Text, default="USD")

    def payment_methods(self) -> list[str]:
        methods = self.enabled_payment_methods or DEFAULT_PAYMENT_METHODS
        return [name for name, enabled in methods.items() if enabled]
