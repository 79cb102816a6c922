"""
WhatsApp Provider Abstraction Layer

שכבת הפשטה לשליחת הודעות WhatsApp עבור ה-delivery worker.
"""
from app.domain.services.whatsapp.base_provider import (
    BaseWhatsAppProvider,
    GatewayErrorKind,
    SendFailure,
    SendResult,
    SendSuccess,
)
from app.domain.services.whatsapp.provider_factory import get_whatsapp_provider

__all__ = [
    "BaseWhatsAppProvider",
    "GatewayErrorKind",
    "SendFailure",
    "SendResult",
    "SendSuccess",
    "get_whatsapp_provider",
]
