"""
Vendor Model - Tenant WhatsApp Integration
"""
import enum
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text

from app.db.compat import new_id, str_enum
from app.db.database import Base


class WhatsAppStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIGURED = "configured"
    CONNECTED = "connected"
    ERROR = "error"


class Vendor(Base):
    """Tenant with its own WhatsApp Business credentials"""

    __tablename__ = "vendors"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)

    whatsapp_business_id = Column(String(64), nullable=True)
    whatsapp_phone_number_id = Column(String(64), nullable=True)
    # base64(iv || tag || ciphertext) — מפוענח רק בזיכרון של ה-worker
    whatsapp_access_token = Column(Text, nullable=True)

    # מתג כיבוי ברמת הדייר — עובר ל-error כש-Meta דוחה את הטוקן (קוד 190)
    whatsapp_status = Column(
        str_enum(WhatsAppStatus, "whatsapp_status"),
        default=WhatsAppStatus.PENDING,
        nullable=False,
    )
    whatsapp_last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def has_whatsapp_credentials(self) -> bool:
        return bool(self.whatsapp_phone_number_id and self.whatsapp_access_token)
