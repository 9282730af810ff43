from app.models.ai_conversation import ConversationRecord
from app.models.assistant import Assistant
from app.models.inbound_receipt import InboundReceipt
from app.models.order import Order
from app.models.product import Product
from app.models.session_record import SessionRecord
from app.models.tenant_settings import TenantSettings

__all__ = [
    "Assistant",
    "ConversationRecord",
    "InboundReceipt",
    "Order",
    "Product",
    "SessionRecord",
    "TenantSettings",
]
