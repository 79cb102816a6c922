"""
Cloud API Provider — מימוש BaseWhatsAppProvider מעל Graph API של Meta.

POST {graph}/{version}/{phone_number_id}/messages עם Bearer token של הדייר.
כל בקשה מוגבלת ב-timeout. שגיאות זמניות (רשת, 5xx, 429) עוברות דרך
circuit breaker משותף; דחיות ספציפיות לדייר (טוקן, מספר לא תקין) לא
נספרות בו כדי שדייר אחד לא יחסום את כולם.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import CircuitBreakerOpenError, WhatsAppError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator, TextSanitizer
from app.domain.services.whatsapp.base_provider import (
    BaseWhatsAppProvider,
    GatewayErrorKind,
    SendFailure,
    SendResult,
    SendSuccess,
)

logger = get_logger(__name__)


class _TransientResponse(WhatsAppError):
    """תשובה עם סטטוס זמני — נזרקת בתוך ה-breaker כדי שתיספר ככשלון."""

    def __init__(self, operation: str, response: httpx.Response) -> None:
        base = WhatsAppError.from_response(operation, response)
        super().__init__(base.message, details=base.details)
        self.response = response


def _parse_provider_error(response: httpx.Response) -> tuple[Optional[int], Optional[str]]:
    """חילוץ error.code / error.message מגוף תשובה של Graph API."""
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    if not isinstance(error, dict):
        return None, None

    code = error.get("code")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    message = error.get("message")
    return code, str(message) if message is not None else None


def _extract_message_id(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    messages = body.get("messages") if isinstance(body, dict) else None
    if messages and isinstance(messages, list) and isinstance(messages[0], dict):
        return messages[0].get("id")
    return None


class CloudApiProvider(BaseWhatsAppProvider):
    """
    WhatsApp Cloud API דרך httpx.

    אפשר להזריק httpx.AsyncClient (בדיקות / שימוש חוזר בחיבורים);
    אחרת נפתח client לכל בקשה.
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout_seconds: float | None = None,
        transient_status_codes: set[int] | None = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._http_client = http_client
        self._base_url = (base_url or settings.WHATSAPP_GRAPH_API_URL).rstrip("/")
        self._api_version = api_version or settings.WHATSAPP_GRAPH_API_VERSION
        self._timeout = timeout_seconds or settings.WHATSAPP_SEND_TIMEOUT_SECONDS
        self._transient_status_codes = (
            transient_status_codes
            if transient_status_codes is not None
            else settings.transient_status_codes
        )

    # ── ממשק ציבורי ──

    @property
    def provider_name(self) -> str:
        return "cloud_api"

    async def send_image(
        self,
        *,
        phone_number_id: str,
        access_token: str,
        to: str,
        image_url: str,
        caption: Optional[str] = None,
    ) -> SendResult:
        image: dict[str, Any] = {"link": image_url}
        if caption:
            image["caption"] = caption

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "image",
            "image": image,
        }
        return await self._post_message("send_image", phone_number_id, access_token, payload)

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
        template: dict[str, Any] = {
            "name": template_name,
            "language": {"code": language_code},
        }
        if header_image_url:
            template["components"] = [
                {
                    "type": "header",
                    "parameters": [{"type": "image", "image": {"link": header_image_url}}],
                }
            ]

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "template",
            "template": template,
        }
        return await self._post_message("send_template", phone_number_id, access_token, payload)

    # ── HTTP ──

    def _messages_url(self, phone_number_id: str) -> str:
        return f"{self._base_url}/{self._api_version}/{phone_number_id}/messages"

    async def _post(self, url: str, payload: dict, headers: dict) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(
                url, json=payload, headers=headers, timeout=self._timeout
            )
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(url, json=payload, headers=headers)

    async def _post_message(
        self,
        operation: str,
        phone_number_id: str,
        access_token: str,
        payload: dict,
    ) -> SendResult:
        url = self._messages_url(phone_number_id)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        phone_masked = PhoneNumberValidator.mask(payload.get("to", ""))

        async def _send() -> httpx.Response:
            response = await self._post(url, payload, headers)
            if response.status_code in self._transient_status_codes:
                raise _TransientResponse(operation, response)
            return response

        try:
            response = await self._circuit_breaker.execute(_send)
        except CircuitBreakerOpenError as exc:
            logger.warning(
                "Cloud API circuit breaker פתוח — מדלג על שליחה",
                extra_data={"operation": operation, "phone": phone_masked},
            )
            return SendFailure(
                kind=GatewayErrorKind.CIRCUIT_OPEN,
                message=exc.message,
                retry_after_seconds=exc.details.get("retry_after_seconds"),
            )
        except _TransientResponse as exc:
            response = exc.response
        except httpx.TimeoutException:
            logger.warning(
                f"{operation} timeout",
                extra_data={"phone": phone_masked, "timeout_seconds": self._timeout},
            )
            return SendFailure(
                kind=GatewayErrorKind.NETWORK,
                message=f"Cloud API {operation} timed out after {self._timeout}s",
            )
        except httpx.RequestError as exc:
            logger.warning(
                f"שגיאת רשת ב-{operation}",
                extra_data={"phone": phone_masked, "error": str(exc)},
            )
            return SendFailure(
                kind=GatewayErrorKind.NETWORK,
                message=f"Cloud API {operation} network error: {exc}",
            )

        return self._to_result(operation, response, phone_masked)

    def _to_result(self, operation: str, response: httpx.Response, phone_masked: str) -> SendResult:
        if 200 <= response.status_code < 300:
            provider_message_id = _extract_message_id(response)
            if not provider_message_id:
                logger.warning(
                    "Cloud API החזיר הצלחה ללא message id",
                    extra_data={"operation": operation, "phone": phone_masked},
                )
            return SendSuccess(provider_message_id=provider_message_id)

        provider_code, provider_message = _parse_provider_error(response)
        if provider_code is not None or provider_message:
            return SendFailure(
                kind=GatewayErrorKind.PROVIDER,
                message=TextSanitizer.sanitize(provider_message or f"{operation} rejected"),
                status_code=response.status_code,
                provider_code=provider_code,
            )

        return SendFailure(
            kind=GatewayErrorKind.HTTP,
            message=TextSanitizer.sanitize(
                f"{operation} returned status {response.status_code}: {response.text}",
                max_length=500,
            ),
            status_code=response.status_code,
        )
