"""
Delivery Worker - drains queued outbound WhatsApp messages one at a time.

Each iteration:
    1. pick the oldest eligible queued message
    2. claim it (conditional UPDATE queued -> processing)
    3. resolve vendor, recipient, media and delivery receipt
    4. decrypt the vendor's access token
    5. normalize the recipient number
    6. send through the Cloud API provider
    7/8. record the outcome on message + delivery in one transaction

A failure is booked as one attempt (retry_count += 1); the message returns
to the queue until WORKER_MAX_RETRIES is reached. A provider auth failure
(code 190) also switches the vendor's integration to "error". When the
shared circuit breaker is open nothing is sent and nothing is booked: the
claim goes back to the queue and the worker waits out the breaker.
"""
from __future__ import annotations

import asyncio
import enum
import random
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.encryption import CredentialVault, get_credential_vault
from app.core.exceptions import (
    DeliveryPreconditionError,
    DeliveryRecordMissingError,
    ErrorCode,
    MediaCardinalityError,
    MediaNotFoundError,
    RecipientMissingError,
    VendorNotConfiguredError,
)
from app.core.logging import get_logger, message_correlation
from app.core.validation import PhoneNumberValidator
from app.db.database import get_task_session
from app.db.models.message import Message, MessageStatus, MessageType
from app.db.models.message_delivery import MessageDelivery
from app.db.models.message_media import MessageMedia
from app.domain.services.message_queue_service import MessageQueueService
from app.domain.services.whatsapp import (
    BaseWhatsAppProvider,
    GatewayErrorKind,
    SendFailure,
    SendResult,
    get_whatsapp_provider,
)

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class IterationOutcome(str, enum.Enum):
    IDLE = "idle"              # אין הודעה זכאית
    CLAIM_LOST = "claim_lost"  # worker אחר תפס ראשון
    SENT = "sent"
    RETRY = "retry"            # ניסיון כושל, ההודעה חזרה לתור
    FAILED = "failed"          # ניסיון כושל אחרון
    ERROR = "error"            # כשלון DB — ההודעה נשארת ב-processing עד ה-sweeper
    DEFERRED = "deferred"      # circuit breaker פתוח — ה-claim שוחרר בלי לספור ניסיון


@dataclass(frozen=True)
class WorkerConfig:
    max_retries: int = 2
    send_delay_seconds: float = 1.2
    idle_poll_seconds: float = 2.0
    failure_backoff_seconds: float = 3.0
    backoff_jitter_seconds: float = 0.0
    country_prefix: str = "91"
    message_types: tuple[str, ...] = (MessageType.IMAGE.value, MessageType.TEMPLATE.value)

    @classmethod
    def from_settings(cls) -> "WorkerConfig":
        return cls(
            max_retries=settings.WORKER_MAX_RETRIES,
            send_delay_seconds=settings.WORKER_SEND_DELAY_SECONDS,
            idle_poll_seconds=settings.WORKER_IDLE_POLL_SECONDS,
            failure_backoff_seconds=settings.WORKER_FAILURE_BACKOFF_SECONDS,
            backoff_jitter_seconds=settings.WORKER_BACKOFF_JITTER_SECONDS,
            country_prefix=settings.WORKER_DEFAULT_COUNTRY_PREFIX,
            message_types=tuple(settings.worker_message_types),
        )


@dataclass(frozen=True)
class SendPlan:
    """Everything needed for one gateway call, resolved before contacting it."""
    delivery: MessageDelivery
    media: Optional[MessageMedia]
    phone_number_id: str
    access_token: str
    recipient: str


class DeliveryWorker:
    """
    Polling delivery loop.

    session_factory must return an async context manager yielding an
    AsyncSession; get_task_session is used by default so the engine is bound
    to the running event loop.
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_task_session,
        provider: BaseWhatsAppProvider | None = None,
        vault: CredentialVault | None = None,
        config: WorkerConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._vault = vault
        self.config = config or WorkerConfig.from_settings()
        self._sleep = sleep
        self._jitter = jitter
        # retry_after של ה-breaker מה-DEFERRED האחרון
        self._breaker_retry_after = 0.0

    @property
    def provider(self) -> BaseWhatsAppProvider:
        if self._provider is None:
            self._provider = get_whatsapp_provider()
        return self._provider

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = get_credential_vault()
        return self._vault

    # ==================== loop ====================

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Run iterations until stop_event is set. Pauses are interrupted by it."""
        logger.info(
            "Delivery worker started",
            extra_data={
                "message_types": list(self.config.message_types),
                "max_retries": self.config.max_retries,
            },
        )
        while not stop_event.is_set():
            try:
                outcome = await self.run_once()
            except Exception as exc:
                logger.error(
                    "Unexpected error in delivery iteration",
                    extra_data={"error": str(exc)},
                    exc_info=True,
                )
                outcome = IterationOutcome.ERROR

            delay = self.pause_for(outcome)
            if delay > 0:
                await self.pause(delay, stop_event)

        logger.info("Delivery worker stopped")

    def pause_for(self, outcome: IterationOutcome) -> float:
        """Pause after an iteration, in seconds."""
        if outcome == IterationOutcome.IDLE:
            return self.config.idle_poll_seconds
        if outcome == IterationOutcome.CLAIM_LOST:
            return 0.0
        if outcome == IterationOutcome.SENT:
            return self.config.send_delay_seconds
        if outcome == IterationOutcome.DEFERRED:
            return max(self._breaker_retry_after, self.config.failure_backoff_seconds)

        delay = self.config.failure_backoff_seconds
        if self.config.backoff_jitter_seconds > 0:
            delay += self._jitter(0.0, self.config.backoff_jitter_seconds)
        return delay

    async def pause(self, seconds: float, stop_event: asyncio.Event) -> None:
        """Sleep for seconds, returning early once stop_event is set."""
        if self._sleep is not None:
            await self._sleep(seconds)
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> IterationOutcome:
        """Poll, claim and process at most one message."""
        async with self._session_factory() as db:
            queue = MessageQueueService(db)
            try:
                candidate = await queue.find_oldest_eligible(
                    self.config.message_types, self.config.max_retries
                )
                if candidate is None:
                    return IterationOutcome.IDLE

                message_id = candidate.id
                if not await queue.claim(message_id):
                    logger.info("Claim lost to another worker", extra_data={"message_id": message_id})
                    return IterationOutcome.CLAIM_LOST
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.error(
                    "Queue poll failed",
                    extra_data={"error": str(exc)},
                    exc_info=True,
                )
                return IterationOutcome.ERROR

            with message_correlation(message_id):
                return await self._process_claimed(queue, message_id)

    # ==================== one message ====================

    async def _process_claimed(self, queue: MessageQueueService, message_id: str) -> IterationOutcome:
        try:
            message = await queue.load_with_relations(message_id)
        except SQLAlchemyError as exc:
            await queue.db.rollback()
            logger.error(
                "Failed to load claimed message",
                extra_data={"message_id": message_id, "error": str(exc)},
                exc_info=True,
            )
            return IterationOutcome.ERROR

        if message is None:
            logger.error("Claimed message disappeared", extra_data={"message_id": message_id})
            return IterationOutcome.ERROR

        try:
            plan = self.prepare(message)
        except DeliveryPreconditionError as exc:
            logger.warning(
                "Message failed before send",
                extra_data={
                    "message_id": message.id,
                    "error_code": exc.error_code.value,
                    "error": exc.message,
                },
            )
            return await self._record_failure(
                queue, message, None, exc.error_code.value, exc.message
            )

        # אין כתיבות ממתינות; סוגר את טרנזקציית הקריאה כדי שהחיבור לא יוחזק
        # "idle in transaction" לאורך קריאת ה-HTTP. התוצאה נרשמת בטרנזקציה חדשה.
        try:
            await queue.db.commit()
        except SQLAlchemyError as exc:
            return await self._persistence_failed(queue, message.id, exc)

        logger.info(
            "Sending WhatsApp message",
            extra_data={
                "message_id": message.id,
                "message_type": _value(message.message_type),
                "to": PhoneNumberValidator.mask(plan.recipient),
                "attempt": (message.retry_count or 0) + 1,
            },
        )
        result = await self._send(message, plan)

        if result.ok:
            return await self._record_success(queue, message, plan.delivery, result.provider_message_id)
        if result.kind == GatewayErrorKind.CIRCUIT_OPEN:
            return await self._defer(queue, message, result)
        return await self._record_gateway_failure(queue, message, plan.delivery, result)

    def prepare(self, message: Message) -> SendPlan:
        """
        Validate the claimed message and resolve what the gateway needs.

        Raises a DeliveryPreconditionError subclass for anything that would
        make a gateway call pointless; those are booked without sending.
        """
        media = list(message.media or [])
        deliveries = list(message.deliveries or [])

        if message.message_type == MessageType.IMAGE:
            if not media:
                raise MediaNotFoundError(message.id)
            if not deliveries:
                raise DeliveryRecordMissingError(message.id)
            if len(media) > 1 or len(deliveries) > 1:
                raise MediaCardinalityError(message.id, len(media), len(deliveries))
            if not media[0].media_url:
                raise MediaNotFoundError(message.id)
        else:
            if not deliveries:
                raise DeliveryRecordMissingError(message.id)
            if len(media) > 1 or len(deliveries) > 1:
                raise MediaCardinalityError(message.id, len(media), len(deliveries))
            if not message.template_name:
                raise DeliveryPreconditionError(
                    message="Template name missing",
                    error_code=ErrorCode.VALIDATION_ERROR,
                    message_id=message.id,
                )

        vendor = message.vendor
        if vendor is None or not vendor.has_whatsapp_credentials:
            raise VendorNotConfiguredError(message.vendor_id, message.id)

        # CredentialDecryptionError מתפשט כמו כל תנאי מקדים אחר
        access_token = self.vault.decrypt(vendor.whatsapp_access_token)

        lead = message.conversation.lead if message.conversation is not None else None
        recipient = PhoneNumberValidator.normalize_recipient(
            lead.phone_number if lead is not None else None,
            self.config.country_prefix,
        )
        if not recipient:
            raise RecipientMissingError(message.id)

        return SendPlan(
            delivery=deliveries[0],
            media=media[0] if media else None,
            phone_number_id=vendor.whatsapp_phone_number_id,
            access_token=access_token,
            recipient=recipient,
        )

    async def _send(self, message: Message, plan: SendPlan) -> SendResult:
        if message.message_type == MessageType.IMAGE:
            return await self.provider.send_image(
                phone_number_id=plan.phone_number_id,
                access_token=plan.access_token,
                to=plan.recipient,
                image_url=plan.media.media_url,
                caption=plan.media.caption,
            )
        return await self.provider.send_template(
            phone_number_id=plan.phone_number_id,
            access_token=plan.access_token,
            to=plan.recipient,
            template_name=message.template_name,
            language_code=message.template_language or "en",
            header_image_url=plan.media.media_url if plan.media else None,
        )

    # ==================== reconciliation ====================

    async def _record_success(
        self,
        queue: MessageQueueService,
        message: Message,
        delivery: MessageDelivery,
        provider_message_id: str | None,
    ) -> IterationOutcome:
        try:
            await queue.mark_sent(message, delivery, provider_message_id)
        except SQLAlchemyError as exc:
            return await self._persistence_failed(queue, message.id, exc)

        logger.info(
            "WhatsApp message sent",
            extra_data={"message_id": message.id, "whatsapp_message_id": provider_message_id},
        )
        return IterationOutcome.SENT

    async def _defer(
        self, queue: MessageQueueService, message: Message, failure: SendFailure
    ) -> IterationOutcome:
        self._breaker_retry_after = failure.retry_after_seconds or 0.0
        try:
            await queue.release_claim(message)
        except SQLAlchemyError as exc:
            return await self._persistence_failed(queue, message.id, exc)

        logger.warning(
            "Gateway circuit open, message returned to queue",
            extra_data={
                "message_id": message.id,
                "retry_after_seconds": self._breaker_retry_after,
            },
        )
        return IterationOutcome.DEFERRED

    async def _record_gateway_failure(
        self,
        queue: MessageQueueService,
        message: Message,
        delivery: MessageDelivery,
        failure: SendFailure,
    ) -> IterationOutcome:
        logger.warning(
            "WhatsApp send failed",
            extra_data={
                "message_id": message.id,
                "attempt": (message.retry_count or 0) + 1,
                "kind": failure.kind.value,
                "http_status": failure.status_code,
                "provider_code": failure.provider_code,
                "error": failure.message,
            },
        )
        vendor_error = None
        if failure.is_auth_error:
            vendor_error = failure.message
            logger.error(
                "Vendor access token rejected, disabling WhatsApp integration",
                extra_data={"vendor_id": message.vendor_id, "provider_code": failure.provider_code},
            )
        return await self._record_failure(
            queue, message, delivery, failure.error_code, failure.message, vendor_error
        )

    async def _record_failure(
        self,
        queue: MessageQueueService,
        message: Message,
        delivery: MessageDelivery | None,
        error_code: str,
        error_text: str,
        vendor_error: str | None = None,
    ) -> IterationOutcome:
        message_id = message.id
        try:
            new_status = await queue.mark_failed(
                message,
                delivery,
                error_code=error_code,
                error_text=error_text,
                max_retries=self.config.max_retries,
                vendor_error=vendor_error,
            )
        except SQLAlchemyError as exc:
            return await self._persistence_failed(queue, message_id, exc)

        if new_status == MessageStatus.FAILED:
            logger.warning(
                "Message failed permanently",
                extra_data={"message_id": message_id, "error_code": error_code},
            )
            return IterationOutcome.FAILED
        return IterationOutcome.RETRY

    async def _persistence_failed(
        self, queue: MessageQueueService, message_id: str, exc: SQLAlchemyError
    ) -> IterationOutcome:
        await queue.db.rollback()
        logger.error(
            "Failed to record send outcome, message left in processing",
            extra_data={"message_id": message_id, "error": str(exc)},
            exc_info=True,
        )
        return IterationOutcome.ERROR


def _value(enum_or_str) -> str:
    return enum_or_str.value if hasattr(enum_or_str, "value") else str(enum_or_str)


# אחרי אלה אין טעם להמשיך ב-batch; ה-tick הבא של beat ימשיך מכאן
_DRAIN_STOP = frozenset({IterationOutcome.IDLE, IterationOutcome.ERROR, IterationOutcome.DEFERRED})


async def drain(
    worker: DeliveryWorker,
    max_messages: int,
    stop_event: asyncio.Event | None = None,
) -> dict[str, int]:
    """
    Process up to max_messages, paced like run_forever.

    Sends are spaced by the send delay and failures by the backoff, so batch
    mode keeps the same outbound rate as the long-running worker. Stops at
    the first IDLE, ERROR or DEFERRED; no pause follows the last iteration.
    Used by the Celery beat task, where the beat interval replaces the idle
    poll.
    """
    stop_event = stop_event or asyncio.Event()
    counts: dict[str, int] = {outcome.value: 0 for outcome in IterationOutcome}
    for iteration in range(max_messages):
        outcome = await worker.run_once()
        counts[outcome.value] += 1
        if outcome in _DRAIN_STOP or stop_event.is_set():
            break
        if iteration == max_messages - 1:
            break

        delay = worker.pause_for(outcome)
        if delay > 0:
            await worker.pause(delay, stop_event)
    return counts
