"""
Message Media Model - attachment of an outbound message (owned by the upload flow)
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship

from app.db.compat import new_id
from app.db.database import Base


class MessageMedia(Base):
    __tablename__ = "message_media"

    id = Column(String(36), primary_key=True, default=new_id)
    message_id = Column(String(36), ForeignKey("messages.id"), nullable=False, index=True)

    media_type = Column(String(20), nullable=False, default="image")
    mime_type = Column(String(100), nullable=True)
    media_url = Column(Text, nullable=False)  # קישור ל-S3, ה-worker לא מוריד את הקובץ
    caption = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    message = relationship("Message", back_populates="media")
