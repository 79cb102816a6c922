"""
Admin Debug Endpoints — ניטור ותחזוקה של תור ההודעות היוצאות ללא גישה ישירה ל-DB.

1. סטטוס circuit breaker של Cloud API
2. סיכום ושאילתת הודעות לפי סטטוס
3. retry ידני להודעה כושלת
4. שחרור ידני של הודעות שנתקעו ב-processing
"""
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.circuit_breaker import CircuitBreaker, get_whatsapp_cloud_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.message import Message, MessageStatus
from app.domain.services.message_queue_service import MessageQueueService

logger = get_logger(__name__)

router = APIRouter()

_AUTH_RESPONSES = {
    401: {"description": "חסר מפתח API"},
    403: {"description": "מפתח API שגוי"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class CircuitBreakerStatusResponse(BaseModel):
    """סטטוס של circuit breaker בודד"""
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    success_count: int
    half_open_calls: int
    retry_after_seconds: float = Field(
        description="שניות עד שניסיון חוזר אפשרי (0 אם לא פתוח)"
    )


class MessageSummaryResponse(BaseModel):
    """סיכום כמותי של הודעות בתור"""
    queued: int = 0
    processing: int = 0
    sent: int = 0
    failed: int = 0
    total: int = 0


class QueuedMessageResponse(BaseModel):
    """הודעה יוצאת בודדת עם מצב רשומת המסירה שלה"""
    id: str
    vendor_id: str
    message_type: str
    status: str
    retry_count: int
    error_code: str | None
    created_at: datetime | None
    claimed_at: datetime | None
    processed_at: datetime | None
    delivery_status: str | None = None
    whatsapp_message_id: str | None = None
    delivery_error: str | None = None


class MessageRetryResponse(BaseModel):
    """תשובה לפעולת retry על הודעה"""
    message_id: str
    previous_status: str
    new_status: str
    retry_count: int


class StaleReleaseResponse(BaseModel):
    released: int
    cutoff: datetime


def _value(enum_or_str) -> str:
    return enum_or_str.value if hasattr(enum_or_str, "value") else str(enum_or_str)


def _message_to_response(message: Message) -> QueuedMessageResponse:
    delivery = message.deliveries[0] if message.deliveries else None
    return QueuedMessageResponse(
        id=message.id,
        vendor_id=message.vendor_id,
        message_type=_value(message.message_type),
        status=_value(message.status),
        retry_count=message.retry_count,
        error_code=message.error_code,
        created_at=message.created_at,
        claimed_at=message.claimed_at,
        processed_at=message.processed_at,
        delivery_status=_value(delivery.status) if delivery else None,
        whatsapp_message_id=delivery.whatsapp_message_id if delivery else None,
        delivery_error=delivery.error if delivery else None,
    )


# ─── 1. Circuit Breakers ────────────────────────────────────────────────────

@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="סטטוס circuit breakers",
    description="מצב ה-circuit breaker של WhatsApp Cloud API וכל breaker אחר שנוצר בתהליך.",
    responses={200: {"description": "רשימת סטטוס כל circuit breakers"}, **_AUTH_RESPONSES},
)
async def get_circuit_breaker_status(
    _: None = Depends(require_admin_api_key),
) -> list[CircuitBreakerStatusResponse]:
    # אתחול ה-breaker כדי שיופיע גם לפני השליחה הראשונה
    get_whatsapp_cloud_circuit_breaker()
    return [
        CircuitBreakerStatusResponse(**cb.snapshot())
        for cb in CircuitBreaker.registered()
    ]


# ─── 2. סיכום + שאילתת הודעות ───────────────────────────────────────────────

@router.get(
    "/messages/summary",
    response_model=MessageSummaryResponse,
    summary="סיכום כמותי של הודעות",
    description="ספירה לפי סטטוס של כל ההודעות בטבלת messages.",
    responses={200: {"description": "סיכום כמותי"}, **_AUTH_RESPONSES},
)
async def get_message_summary(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> MessageSummaryResponse:
    counts = await MessageQueueService(db).status_summary()
    return MessageSummaryResponse(**counts)


@router.get(
    "/messages",
    response_model=list[QueuedMessageResponse],
    summary="שאילתת הודעות",
    description="הודעות אחרונות עם סינון לפי סטטוס. ברירת מחדל: failed בלבד.",
    responses={
        200: {"description": "רשימת הודעות מסוננת"},
        400: {"description": "סטטוס לא תקין"},
        **_AUTH_RESPONSES,
    },
)
async def list_messages(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    message_status: Optional[str] = Query(
        default="failed",
        description="סינון לפי סטטוס: queued, processing, sent, failed",
    ),
    limit: int = Query(default=50, ge=1, le=200, description="מספר הודעות מקסימלי"),
) -> list[QueuedMessageResponse]:
    if message_status:
        valid_statuses = {s.value for s in MessageStatus}
        if message_status not in valid_statuses:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"סטטוס לא תקין. אפשרויות: {', '.join(sorted(valid_statuses))}",
            )

    messages = await MessageQueueService(db).list_messages(
        status=message_status or None, limit=limit
    )
    return [_message_to_response(m) for m in messages]


# ─── 3. retry ידני ──────────────────────────────────────────────────────────

@router.post(
    "/messages/{message_id}/retry",
    response_model=MessageRetryResponse,
    summary="retry ידני להודעה כושלת",
    description=(
        "מחזיר הודעה בסטטוס failed לתור עם מונה ניסיונות מאופס, "
        "כך שה-worker ישלח אותה שוב."
    ),
    responses={
        200: {"description": "ההודעה הוחזרה לתור"},
        404: {"description": "הודעה לא נמצאה"},
        409: {"description": "ההודעה לא בסטטוס failed"},
        **_AUTH_RESPONSES,
    },
)
async def retry_message(
    message_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> MessageRetryResponse:
    # MessageNotFoundError / MessageStatusError מטופלים ע"י app_exception_handler
    message = await MessageQueueService(db).requeue(message_id)
    return MessageRetryResponse(
        message_id=message.id,
        previous_status=MessageStatus.FAILED.value,
        new_status=_value(message.status),
        retry_count=message.retry_count,
    )


# ─── 4. הודעות תקועות ───────────────────────────────────────────────────────

@router.post(
    "/messages/release-stale",
    response_model=StaleReleaseResponse,
    summary="שחרור הודעות תקועות ב-processing",
    description=(
        "הודעות שנתפסו לפני יותר מ-older_than_seconds ולא הסתיימו נספרות כניסיון "
        "שאבד: חוזרות לתור, או עוברות ל-failed אם נגמרו הניסיונות."
    ),
    responses={200: {"description": "מספר ההודעות ששוחררו"}, **_AUTH_RESPONSES},
)
async def release_stale_messages(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    older_than_seconds: Optional[int] = Query(
        default=None,
        ge=0,
        description="ברירת מחדל: WORKER_CLAIM_TIMEOUT_SECONDS",
    ),
) -> StaleReleaseResponse:
    seconds = (
        older_than_seconds
        if older_than_seconds is not None
        else settings.WORKER_CLAIM_TIMEOUT_SECONDS
    )
    cutoff = datetime.utcnow() - timedelta(seconds=seconds)
    released = await MessageQueueService(db).release_stale_claims(
        older_than=cutoff,
        max_retries=settings.WORKER_MAX_RETRIES,
    )
    logger.info(
        "שחרור ידני של הודעות תקועות",
        extra_data={"released": released, "older_than_seconds": seconds},
    )
    return StaleReleaseResponse(released=released, cutoff=cutoff)
