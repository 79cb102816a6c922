"""
Lead Model - Message Recipients
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey

from app.db.compat import new_id
from app.db.database import Base


class Lead(Base):
    """A vendor's contact; the worker only reads its phone number"""

    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=new_id)
    vendor_id = Column(String(36), ForeignKey("vendors.id"), nullable=False, index=True)
    name = Column(String(200), nullable=True)
    phone_number = Column(String(32), nullable=False)  # כפי שהוזן ע"י הדייר, לא מנורמל

    created_at = Column(DateTime, default=datetime.utcnow)
