"""
Provider Factory — יצירת ספק WhatsApp לפי הגדרות.

ספק אחד לכל התהליך: החיבור ל-Cloud API לא תלוי בדייר, הפרטים של
הדייר מועברים בכל שליחה.
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_whatsapp_cloud_circuit_breaker
from app.core.logging import get_logger
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)

_provider: BaseWhatsAppProvider | None = None
_lock = threading.Lock()


def get_whatsapp_provider() -> BaseWhatsAppProvider:
    """ספק WhatsApp לשליחת הודעות יוצאות (Cloud API)."""
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:
                from app.domain.services.whatsapp.cloud_api_provider import CloudApiProvider

                _provider = CloudApiProvider(circuit_breaker=get_whatsapp_cloud_circuit_breaker())
                logger.info(
                    "ספק WhatsApp אותחל",
                    extra_data={"provider": _provider.provider_name},
                )
    return _provider


def reset_providers() -> None:
    """איפוס ספקים — לשימוש בבדיקות בלבד."""
    global _provider
    with _lock:
        _provider = None
