"""
Message Model - Outbound communication unit consumed by the delivery worker
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import relationship

from app.db.compat import new_id, str_enum
from app.db.database import Base


class MessageStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class MessageType(str, enum.Enum):
    IMAGE = "image"
    TEMPLATE = "template"
    TEXT = "text"


class MessageDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Message(Base):
    """
    Created as "queued" by the campaign/chat producers; every later status
    change belongs to the worker:
        queued -> processing -> sent | queued (retry) | failed
    Terminal rows are kept for audit.
    """

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=new_id)
    vendor_id = Column(String(36), ForeignKey("vendors.id"), nullable=False, index=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)

    direction = Column(
        str_enum(MessageDirection, "message_direction"),
        default=MessageDirection.OUTBOUND,
        nullable=False,
    )
    channel = Column(String(20), nullable=False, default="whatsapp")
    message_type = Column(str_enum(MessageType, "message_type"), nullable=False)

    # Text body (chat) / template parameters
    content = Column(Text, nullable=True)
    template_name = Column(String(512), nullable=True)
    template_language = Column(String(20), nullable=True)

    status = Column(
        str_enum(MessageStatus, "message_status"),
        default=MessageStatus.QUEUED,
        nullable=False,
    )
    retry_count = Column(Integer, default=0, nullable=False)
    error_code = Column(String(255), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    claimed_at = Column(DateTime, nullable=True)  # נקבע ב-claim, משמש לזיהוי הודעות תקועות
    processed_at = Column(DateTime, nullable=True)

    vendor = relationship("Vendor")
    conversation = relationship("Conversation")
    media = relationship(
        "MessageMedia",
        back_populates="message",
        order_by="MessageMedia.created_at",
    )
    deliveries = relationship(
        "MessageDelivery",
        back_populates="message",
        order_by="MessageDelivery.created_at",
    )

    __table_args__ = (
        # שאילתת ה-poll: status + type + סדר יצירה
        Index("ix_messages_queue_poll", "status", "message_type", "created_at"),
    )
