"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- A fake WhatsApp provider and a credential vault
- Test data factories (vendor, lead, conversation, queued message)
"""
# הגדרת ENCRYPTION_KEY לפני ייבוא app — הולידטור דורש מפתח כש-DEBUG=False
import os
TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4
os.environ.setdefault("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
os.environ.setdefault("ADMIN_API_KEY", "test-admin-api-key")

import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.encryption import CredentialVault
from app.db.database import Base, get_db
from app.db.models.conversation import Conversation
from app.db.models.lead import Lead
from app.db.models.message import Message, MessageStatus, MessageType
from app.db.models.message_delivery import DeliveryStatus, MessageDelivery
from app.db.models.message_media import MessageMedia
from app.db.models.vendor import Vendor, WhatsAppStatus
from app.domain.services.whatsapp.base_provider import (
    BaseWhatsAppProvider,
    SendResult,
    SendSuccess,
)
from app.workers.delivery_worker import WorkerConfig
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ACCESS_TOKEN = "EAAG-test-access-token"
TEST_PHONE_NUMBER_ID = "109876543210"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory(db_session: AsyncSession):
    """
    תחליף ל-get_task_session — מחזיר תמיד את ה-session של הבדיקה.

    StaticPool חולק חיבור אחד, לכן ה-worker וה-assertions חייבים לעבוד
    על אותו session.
    """
    @asynccontextmanager
    async def _factory():
        yield db_session

    return _factory


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": "test-admin-api-key"}


# ============================================================================
# Fake external services
# ============================================================================

class FakeWhatsAppProvider(BaseWhatsAppProvider):
    """ספק WhatsApp לבדיקות — מחזיר תוצאה קבועה ושומר את הקריאות."""

    def __init__(self, result: SendResult | None = None) -> None:
        self.result: SendResult = result or SendSuccess(provider_message_id="wamid.123")
        self.calls: list[tuple[str, dict]] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    async def send_image(self, **kwargs) -> SendResult:
        self.calls.append(("send_image", kwargs))
        return self.result

    async def send_template(self, **kwargs) -> SendResult:
        self.calls.append(("send_template", kwargs))
        return self.result


@pytest.fixture
def fake_provider() -> FakeWhatsAppProvider:
    return FakeWhatsAppProvider()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault.from_hex(TEST_ENCRYPTION_KEY)


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(
        max_retries=2,
        send_delay_seconds=1.2,
        idle_poll_seconds=2.0,
        failure_backoff_seconds=3.0,
        backoff_jitter_seconds=0.0,
        country_prefix="91",
        message_types=("image", "template"),
    )


# ============================================================================
# Test Data Factories
# ============================================================================

# שעון מונוטוני ל-created_at — סדר היצירה בבדיקה הוא סדר התור
_clock = itertools.count()
_BASE_TIME = datetime(2026, 1, 1, 12, 0, 0)


def _next_created_at() -> datetime:
    return _BASE_TIME + timedelta(seconds=next(_clock))


@pytest.fixture(autouse=True)
def reset_test_clock():
    """מאפס את השעון בין בדיקות"""
    global _clock
    _clock = itertools.count()
    yield


@pytest.fixture
def vendor_factory(db_session: AsyncSession, vault: CredentialVault):
    """Factory for creating vendors with an encrypted access token"""
    async def _create_vendor(
        name: str = "Test Vendor",
        phone_number_id: Optional[str] = TEST_PHONE_NUMBER_ID,
        access_token: Optional[str] = TEST_ACCESS_TOKEN,
        encrypted_token: Optional[str] = None,
        whatsapp_status: WhatsAppStatus = WhatsAppStatus.CONNECTED,
    ) -> Vendor:
        if encrypted_token is None and access_token is not None:
            encrypted_token = vault.encrypt(access_token)
        vendor = Vendor(
            name=name,
            whatsapp_phone_number_id=phone_number_id,
            whatsapp_access_token=encrypted_token,
            whatsapp_status=whatsapp_status,
        )
        db_session.add(vendor)
        await db_session.commit()
        await db_session.refresh(vendor)
        return vendor

    return _create_vendor


@pytest.fixture
def conversation_factory(db_session: AsyncSession):
    """Factory for creating a lead and its WhatsApp conversation"""
    async def _create_conversation(
        vendor: Vendor,
        phone_number: str = "9876543210",
        lead_name: str = "Test Lead",
    ) -> Conversation:
        lead = Lead(vendor_id=vendor.id, name=lead_name, phone_number=phone_number)
        db_session.add(lead)
        await db_session.flush()

        conversation = Conversation(vendor_id=vendor.id, lead_id=lead.id, channel="whatsapp")
        db_session.add(conversation)
        await db_session.commit()
        await db_session.refresh(conversation)
        return conversation

    return _create_conversation


@pytest.fixture
def message_factory(db_session: AsyncSession):
    """
    Factory for queued outbound messages with media + delivery rows,
    shaped like the campaign producer writes them.
    """
    async def _create_message(
        vendor: Vendor,
        conversation: Conversation,
        message_type: MessageType = MessageType.IMAGE,
        status: MessageStatus = MessageStatus.QUEUED,
        retry_count: int = 0,
        media_count: int = 1,
        delivery_count: int = 1,
        media_url: str = "https://bucket.s3.amazonaws.com/gallery/shoe.jpg",
        caption: Optional[str] = "New arrivals",
        template_name: Optional[str] = None,
        template_language: Optional[str] = None,
        claimed_at: Optional[datetime] = None,
    ) -> Message:
        message = Message(
            vendor_id=vendor.id,
            conversation_id=conversation.id,
            message_type=message_type,
            status=status,
            retry_count=retry_count,
            template_name=template_name,
            template_language=template_language,
            created_at=_next_created_at(),
            claimed_at=claimed_at,
        )
        db_session.add(message)
        await db_session.flush()

        media_rows = []
        for i in range(media_count):
            media = MessageMedia(
                message_id=message.id,
                media_type="image",
                mime_type="image/jpeg",
                media_url=media_url if i == 0 else f"{media_url}?v={i}",
                caption=caption,
                created_at=_next_created_at(),
            )
            db_session.add(media)
            media_rows.append(media)
        await db_session.flush()

        for i in range(delivery_count):
            db_session.add(MessageDelivery(
                message_id=message.id,
                message_media_id=media_rows[i].id if i < len(media_rows) else None,
                conversation_id=conversation.id,
                status=DeliveryStatus.QUEUED,
                created_at=_next_created_at(),
            ))

        await db_session.commit()
        await db_session.refresh(message)
        return message

    return _create_message


@pytest.fixture
async def sample_vendor(vendor_factory) -> Vendor:
    return await vendor_factory()


@pytest.fixture
async def sample_conversation(conversation_factory, sample_vendor) -> Conversation:
    return await conversation_factory(sample_vendor)


# ============================================================================
# Singleton resets
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_singletons():
    """ספק WhatsApp ו-vault נוצרים פעם אחת לתהליך — מאפסים בין בדיקות"""
    from app.core.encryption import reset_credential_vault
    from app.domain.services.whatsapp.provider_factory import reset_providers

    reset_providers()
    reset_credential_vault()
    yield
    reset_providers()
    reset_credential_vault()


@pytest.fixture
def reload_message(db_session: AsyncSession):
    """שליפה טרייה של הודעה עם כל הקשרים (עוקף את ה-identity map)"""
    from app.domain.services.message_queue_service import MessageQueueService

    async def _reload(message_id: str) -> Message:
        db_session.expire_all()
        return await MessageQueueService(db_session).load_with_relations(message_id)

    return _reload
