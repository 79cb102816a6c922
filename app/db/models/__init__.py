"""
Database Models
"""
from app.db.models.vendor import Vendor, WhatsAppStatus
from app.db.models.lead import Lead
from app.db.models.conversation import Conversation
from app.db.models.message import Message, MessageStatus, MessageType, MessageDirection
from app.db.models.message_media import MessageMedia
from app.db.models.message_delivery import MessageDelivery, DeliveryStatus

__all__ = [
    "Vendor",
    "WhatsAppStatus",
    "Lead",
    "Conversation",
    "Message",
    "MessageStatus",
    "MessageType",
    "MessageDirection",
    "MessageMedia",
    "MessageDelivery",
    "DeliveryStatus",
]
