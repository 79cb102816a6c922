"""
מיגרציות DB של ה-worker — מקור אמת יחיד לשינויי סכמה שה-worker צריך.

הטבלאות עצמן נוצרות ע"י ה-backend (או create_all בפיתוח). כאן רק
עמודות ואינדקסים שה-worker הוסיף על גבי הסכמה הקיימת.
כל המיגרציות idempotent (בטוח להריץ מספר פעמים) ורצות רק על PostgreSQL.
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from app.core.logging import get_logger

logger = get_logger(__name__)


async def run_migration_001(conn: AsyncConnection) -> None:
    """מיגרציה 001 - עמודות claim לשחזור הודעות תקועות ב-processing."""
    await conn.execute(text("""
        ALTER TABLE messages
            ADD COLUMN IF NOT EXISTS claimed_at TIMESTAMP,
            ADD COLUMN IF NOT EXISTS processed_at TIMESTAMP;
    """))

    # אינדקס חלקי ל-sweeper — רק הודעות ב-processing
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_messages_processing_claimed
        ON messages(claimed_at) WHERE status = 'processing';
    """))


async def run_migration_002(conn: AsyncConnection) -> None:
    """מיגרציה 002 - אינדקס חלקי לשאילתת ה-poll (הודעות queued לפי סוג וזמן יצירה)."""
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_messages_queued_poll
        ON messages(message_type, created_at) WHERE status = 'queued';
    """))


async def run_migration_003(conn: AsyncConnection) -> None:
    """מיגרציה 003 - אינדקס על wamid לקישור webhooks של סטטוס חזרה לרשומת המסירה."""
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_message_deliveries_wamid
        ON message_deliveries(whatsapp_message_id);
    """))


async def run_all_migrations(conn: AsyncConnection) -> None:
    """הרצת כל המיגרציות ברצף."""
    logger.info("Running migration 001...")
    await run_migration_001(conn)
    logger.info("Running migration 002...")
    await run_migration_002(conn)
    logger.info("Running migration 003...")
    await run_migration_003(conn)
