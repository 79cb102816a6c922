"""
Conversation Model - Vendor <-> Lead chat thread
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from app.db.compat import new_id
from app.db.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=new_id)
    vendor_id = Column(String(36), ForeignKey("vendors.id"), nullable=False, index=True)
    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=False, index=True)
    channel = Column(String(20), nullable=False, default="whatsapp")

    created_at = Column(DateTime, default=datetime.utcnow)

    lead = relationship("Lead")
