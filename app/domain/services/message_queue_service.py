"""
Message Queue Service - the messages table used as a durable work queue.

Producers insert rows as "queued". The delivery worker claims one row at a
time with a conditional UPDATE, so two workers sharing the table never send
the same message twice, and writes the outcome of each attempt to the
message and its delivery receipt in a single transaction.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, List

from sqlalchemy import func, select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.exceptions import ErrorCode, MessageNotFoundError, MessageStatusError
from app.core.logging import get_logger
from app.core.validation import TextSanitizer
from app.db.models.message import Message, MessageStatus, MessageType, MessageDirection
from app.db.models.message_delivery import DeliveryStatus, MessageDelivery
from app.db.models.message_media import MessageMedia
from app.db.models.vendor import Vendor, WhatsAppStatus
from app.db.queries import message_with_relations

logger = get_logger(__name__)


def _next_status(retry_count: int, max_retries: int) -> MessageStatus:
    """סטטוס אחרי ניסיון כושל: failed כשנגמרו הניסיונות, אחרת חזרה לתור."""
    return MessageStatus.FAILED if retry_count >= max_retries else MessageStatus.QUEUED


def _delivery_status_for(message_status: MessageStatus) -> DeliveryStatus:
    if message_status == MessageStatus.SENT:
        return DeliveryStatus.SENT
    if message_status == MessageStatus.FAILED:
        return DeliveryStatus.FAILED
    return DeliveryStatus.QUEUED


class MessageQueueService:
    """Queue operations over Message / MessageDelivery rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== poll + claim ====================

    async def find_oldest_eligible(
        self,
        message_types: Iterable[MessageType | str],
        max_retries: int,
    ) -> Message | None:
        """Oldest queued message of a served type that still has attempts left."""
        types = [MessageType(t) for t in message_types]
        result = await self.db.execute(
            select(Message)
            .where(
                Message.status == MessageStatus.QUEUED,
                Message.message_type.in_(types),
                Message.retry_count < max_retries,
            )
            .order_by(Message.created_at.asc(), Message.id.asc())
            .limit(1)
        )
        return result.scalars().first()

    async def claim(self, message_id: str) -> bool:
        """
        Atomically move a message from queued to processing.

        Returns False when another worker claimed it first (zero rows
        updated). The claim is committed immediately so it is visible to
        every other poller before the gateway is contacted.
        """
        result = await self.db.execute(
            update(Message)
            .where(Message.id == message_id, Message.status == MessageStatus.QUEUED)
            .values(status=MessageStatus.PROCESSING, claimed_at=datetime.utcnow())
        )
        await self.db.commit()
        return result.rowcount == 1

    async def load_with_relations(self, message_id: str) -> Message | None:
        """Message with vendor, conversation→lead, media and delivery rows."""
        result = await self.db.execute(
            select(Message)
            .options(*message_with_relations())
            .where(Message.id == message_id)
            .execution_options(populate_existing=True)
        )
        return result.unique().scalar_one_or_none()

    # ==================== reconciliation ====================

    async def mark_sent(
        self,
        message: Message,
        delivery: MessageDelivery,
        provider_message_id: str | None,
    ) -> None:
        """Message and delivery both become sent, in one commit."""
        now = datetime.utcnow()
        message.status = MessageStatus.SENT
        message.error_code = None
        message.processed_at = now

        delivery.status = DeliveryStatus.SENT
        delivery.whatsapp_message_id = provider_message_id
        delivery.error = None
        delivery.updated_at = now

        await self.db.commit()

    async def mark_failed(
        self,
        message: Message,
        delivery: MessageDelivery | None,
        error_code: str,
        error_text: str,
        max_retries: int,
        vendor_error: str | None = None,
    ) -> MessageStatus:
        """
        Book one failed attempt.

        retry_count is incremented; the message goes back to queued while
        attempts remain, otherwise it becomes failed. Every delivery row of
        the message mirrors the new status, so a message rejected for having
        several receipts leaves none of them queued. When vendor_error is
        given the vendor's integration is switched to error in the same
        commit.

        Returns the new message status.
        """
        now = datetime.utcnow()
        message.retry_count = (message.retry_count or 0) + 1
        new_status = _next_status(message.retry_count, max_retries)

        message.status = new_status
        message.error_code = error_code
        message.claimed_at = None
        if new_status == MessageStatus.FAILED:
            message.processed_at = now

        error_text = TextSanitizer.sanitize(error_text)
        if delivery is not None:
            delivery.status = _delivery_status_for(new_status)
            delivery.error = error_text
            delivery.updated_at = now
        await self.db.execute(
            update(MessageDelivery)
            .where(MessageDelivery.message_id == message.id)
            .values(
                status=_delivery_status_for(new_status),
                error=error_text,
                updated_at=now,
            )
        )

        if vendor_error is not None:
            await self.db.execute(
                update(Vendor)
                .where(Vendor.id == message.vendor_id)
                .values(
                    whatsapp_status=WhatsAppStatus.ERROR,
                    whatsapp_last_error=vendor_error,
                    updated_at=now,
                )
            )

        await self.db.commit()
        return new_status

    async def release_claim(self, message: Message) -> None:
        """
        Return a claimed message to the queue without booking an attempt.

        Used when the gateway was never contacted (circuit breaker open):
        retry_count, error_code and the delivery rows are left as they were.
        """
        message.status = MessageStatus.QUEUED
        message.claimed_at = None
        await self.db.commit()

    # ==================== stale claims ====================

    async def release_stale_claims(self, older_than: datetime, max_retries: int) -> int:
        """
        Recover messages left in processing by a worker that died mid-send.

        Each one is booked as a lost attempt with CLAIM_EXPIRED. Rows claimed
        before claimed_at existed (NULL) are treated as stale too. Returns the
        number of messages released.
        """
        result = await self.db.execute(
            select(Message.id, Message.retry_count, Message.claimed_at)
            .where(
                Message.status == MessageStatus.PROCESSING,
                or_(Message.claimed_at.is_(None), Message.claimed_at < older_than),
            )
            .order_by(Message.created_at.asc())
        )
        candidates = result.all()

        released = 0
        now = datetime.utcnow()
        for message_id, retry_count, claimed_at in candidates:
            new_retry_count = (retry_count or 0) + 1
            new_status = _next_status(new_retry_count, max_retries)

            # מותנה ב-claimed_at: worker שסיים בינתיים לא נדרס
            stmt = update(Message).where(
                Message.id == message_id,
                Message.status == MessageStatus.PROCESSING,
            )
            if claimed_at is None:
                stmt = stmt.where(Message.claimed_at.is_(None))
            else:
                stmt = stmt.where(Message.claimed_at == claimed_at)

            values = {
                "status": new_status,
                "retry_count": new_retry_count,
                "error_code": ErrorCode.CLAIM_EXPIRED.value,
                "claimed_at": None,
            }
            if new_status == MessageStatus.FAILED:
                values["processed_at"] = now

            updated = await self.db.execute(
                stmt.values(**values)
            )
            if updated.rowcount != 1:
                continue

            await self.db.execute(
                update(MessageDelivery)
                .where(MessageDelivery.message_id == message_id)
                .values(
                    status=_delivery_status_for(new_status),
                    error="Claim expired before the send outcome was recorded",
                    updated_at=now,
                )
            )
            released += 1
            logger.warning(
                "Released stale message claim",
                extra_data={
                    "message_id": message_id,
                    "retry_count": new_retry_count,
                    "new_status": new_status.value,
                },
            )

        await self.db.commit()
        return released

    # ==================== admin ====================

    async def requeue(self, message_id: str) -> Message:
        """Manual retry: failed → queued with the retry counter reset."""
        result = await self.db.execute(
            select(Message)
            .options(selectinload(Message.deliveries))
            .where(Message.id == message_id)
        )
        message = result.scalar_one_or_none()
        if message is None:
            raise MessageNotFoundError(message_id)

        if message.status != MessageStatus.FAILED:
            current = message.status.value if hasattr(message.status, "value") else str(message.status)
            raise MessageStatusError(message_id, current, MessageStatus.FAILED.value)

        now = datetime.utcnow()
        message.status = MessageStatus.QUEUED
        message.retry_count = 0
        message.error_code = None
        message.claimed_at = None
        message.processed_at = None
        for delivery in message.deliveries:
            delivery.status = DeliveryStatus.QUEUED
            delivery.error = None
            delivery.updated_at = now

        await self.db.commit()
        logger.info("Message requeued manually", extra_data={"message_id": message_id})
        return message

    async def status_summary(self) -> dict[str, int]:
        """Message count per status (all statuses present, zero when empty)."""
        result = await self.db.execute(
            select(Message.status, func.count(Message.id)).group_by(Message.status)
        )
        counts = {s.value: 0 for s in MessageStatus}
        for row_status, count in result.all():
            key = row_status.value if hasattr(row_status, "value") else str(row_status)
            counts[key] = count
        counts["total"] = sum(counts.values())
        return counts

    async def list_messages(
        self,
        status: MessageStatus | str | None = None,
        limit: int = 50,
    ) -> List[Message]:
        """Newest messages first, optionally filtered by status."""
        query = (
            select(Message)
            .options(selectinload(Message.deliveries))
            .order_by(Message.created_at.desc())
            .limit(limit)
        )
        if status is not None:
            query = query.where(Message.status == MessageStatus(status))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ==================== producer helper ====================

    async def queue_image_message(
        self,
        vendor_id: str,
        conversation_id: str,
        media_url: str,
        caption: str | None = None,
        mime_type: str = "image/jpeg",
    ) -> Message:
        """
        Insert a queued image message with its media row and delivery receipt,
        the same shape the campaign producer writes.
        """
        message = Message(
            vendor_id=vendor_id,
            conversation_id=conversation_id,
            direction=MessageDirection.OUTBOUND,
            channel="whatsapp",
            message_type=MessageType.IMAGE,
            content=caption,
            status=MessageStatus.QUEUED,
            retry_count=0,
        )
        self.db.add(message)
        await self.db.flush()

        media = MessageMedia(
            message_id=message.id,
            media_type="image",
            mime_type=mime_type,
            media_url=media_url,
            caption=caption,
        )
        self.db.add(media)
        await self.db.flush()

        delivery = MessageDelivery(
            message_id=message.id,
            message_media_id=media.id,
            conversation_id=conversation_id,
            status=DeliveryStatus.QUEUED,
        )
        self.db.add(delivery)
        await self.db.commit()
        return message
