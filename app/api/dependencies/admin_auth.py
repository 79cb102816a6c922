"""
אימות מפתח API עבור endpoints של תחזוקת התור (/api/admin/debug/*).

    @router.post("/messages/{message_id}/retry")
    async def retry(message_id: str, _: None = Depends(require_admin_api_key)):
        ...

ADMIN_API_KEY ריק בסביבה = כל ה-endpoints חסומים (403).
"""
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_API_KEY_HEADER = "X-Admin-API-Key"

_api_key_header = APIKeyHeader(name=ADMIN_API_KEY_HEADER, auto_error=False)


def _reject(request: Request, status_code: int, detail: str, reason: str) -> HTTPException:
    logger.warning(
        "Admin request rejected",
        extra_data={"reason": reason, "path": request.url.path},
    )
    return HTTPException(status_code=status_code, detail=detail)


async def require_admin_api_key(
    request: Request,
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """401 כשה-header חסר, 403 כשהמפתח שגוי או לא מוגדר."""
    configured = settings.ADMIN_API_KEY
    if not configured:
        raise _reject(
            request, status.HTTP_403_FORBIDDEN,
            "Admin API is disabled (ADMIN_API_KEY not set)", "not_configured",
        )
    if not api_key:
        raise _reject(
            request, status.HTTP_401_UNAUTHORIZED,
            f"Missing {ADMIN_API_KEY_HEADER} header", "missing_key",
        )
    if not hmac.compare_digest(api_key.encode(), configured.encode()):
        raise _reject(request, status.HTTP_403_FORBIDDEN, "Invalid admin API key", "wrong_key")
