"""
ממשק בסיסי לספק WhatsApp — Dependency Inversion.

ה-worker תלוי רק בממשק ובתוצאה הטיפוסית (SendResult) ולא במימוש HTTP
ספציפי. ספק לא זורק חריגות על כשלון שליחה — הוא מחזיר SendFailure עם
סוג השגיאה, כך שה-worker מסווג לפי שדות ולא לפי חיטוט באובייקט חריגה.
"""
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal, Optional, Union

# קוד שגיאה של Meta לטוקן לא תקין / שפג תוקפו (OAuthException)
AUTH_ERROR_CODES = frozenset({190})


class GatewayErrorKind(str, enum.Enum):
    NETWORK = "network"            # timeout, חיבור נכשל
    HTTP = "http"                  # סטטוס לא 2xx בלי גוף שגיאה של Meta
    PROVIDER = "provider"          # Meta החזירה error.code / error.message
    CIRCUIT_OPEN = "circuit_open"  # לא נשלחה בקשה — לא נחשב כניסיון


@dataclass(frozen=True)
class SendSuccess:
    provider_message_id: Optional[str]
    ok: Literal[True] = True


@dataclass(frozen=True)
class SendFailure:
    kind: GatewayErrorKind
    message: str
    status_code: Optional[int] = None
    provider_code: Optional[int] = None
    retry_after_seconds: Optional[float] = None
    ok: Literal[False] = False

    @property
    def is_auth_error(self) -> bool:
        """טוקן הדייר נדחה — מכבה את האינטגרציה של הדייר כולו, לא רק את ההודעה."""
        return self.kind == GatewayErrorKind.PROVIDER and self.provider_code in AUTH_ERROR_CODES

    @property
    def error_code(self) -> str:
        """הערך שנשמר ב-messages.error_code."""
        if self.kind == GatewayErrorKind.CIRCUIT_OPEN:
            return "CIRCUIT_OPEN"
        if self.provider_code is not None:
            return str(self.provider_code)
        if self.status_code is not None:
            return f"HTTP_{self.status_code}"
        return "NETWORK_ERROR"


SendResult = Union[SendSuccess, SendFailure]


class BaseWhatsAppProvider(ABC):
    """
    ממשק אחיד לשליחת הודעות WhatsApp עבור דיירים מרובים.

    הפרטים של הדייר (phone_number_id + access_token מפוענח) מועברים בכל
    קריאה — ספק אחד משרת את כל הדיירים.
    """

    @abstractmethod
    async def send_image(
        self,
        *,
        phone_number_id: str,
        access_token: str,
        to: str,
        image_url: str,
        caption: Optional[str] = None,
    ) -> SendResult:
        """
        שליחת תמונה לפי קישור ציבורי.

        Args:
            phone_number_id: מזהה המספר של הדייר ב-Meta.
            access_token: טוקן מפוענח — לא נרשם ללוג.
            to: נמען מנורמל (ספרות בלבד, כולל קידומת מדינה).
            image_url: קישור לתמונה (S3).
            caption: כיתוב אופציונלי.
        """

    @abstractmethod
    async def send_template(
        self,
        *,
        phone_number_id: str,
        access_token: str,
        to: str,
        template_name: str,
        language_code: str,
        header_image_url: Optional[str] = None,
    ) -> SendResult:
        """שליחת template מאושר, עם תמונת header אופציונלית."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק לשימוש בלוגים ודיאגנוסטיקה."""
