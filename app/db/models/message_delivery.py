"""
Message Delivery Model - per-recipient provider receipt
"""
import enum
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship

from app.db.compat import new_id, str_enum
from app.db.database import Base


class DeliveryStatus(str, enum.Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class MessageDelivery(Base):
    """
    Status must always match the parent message (sent/sent, failed/failed,
    queued while the message is queued or processing). Both rows are written
    in the same transaction.
    """

    __tablename__ = "message_deliveries"

    id = Column(String(36), primary_key=True, default=new_id)
    message_id = Column(String(36), ForeignKey("messages.id"), nullable=False, index=True)
    message_media_id = Column(String(36), ForeignKey("message_media.id"), nullable=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False)

    status = Column(
        str_enum(DeliveryStatus, "delivery_status"),
        default=DeliveryStatus.QUEUED,
        nullable=False,
    )
    whatsapp_message_id = Column(String(255), nullable=True, index=True)  # wamid.*
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    message = relationship("Message", back_populates="deliveries")
