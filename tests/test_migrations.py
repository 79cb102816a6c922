"""
בדיקות למיגרציות האוטומטיות ול-helpers של eager loading.

המיגרציות רצות רק על PostgreSQL, לכן כאן בודקים את ה-SQL שנשלח ולא מריצים אותו.
"""
from __future__ import annotations

import pytest
from sqlalchemy import inspect

from app.db.migrations import run_all_migrations
from app.db.models.message import Message
from app.db.models.message_delivery import MessageDelivery
from app.db.queries import message_with_relations


class RecordingConnection:
    """AsyncConnection מזויף שרושם כל statement"""

    def __init__(self) -> None:
        self.statements: list[str] = []

    async def execute(self, statement) -> None:
        self.statements.append(" ".join(str(statement).split()))


@pytest.fixture
async def migration_sql() -> str:
    conn = RecordingConnection()
    await run_all_migrations(conn)
    return "\n".join(conn.statements)


class TestMigrations:

    @pytest.mark.unit
    async def test_claim_columns_added_idempotently(self, migration_sql: str) -> None:
        assert "ADD COLUMN IF NOT EXISTS claimed_at" in migration_sql
        assert "ADD COLUMN IF NOT EXISTS processed_at" in migration_sql

    @pytest.mark.unit
    @pytest.mark.parametrize("index_name", [
        "idx_messages_processing_claimed",
        "idx_messages_queued_poll",
        "idx_message_deliveries_wamid",
    ])
    async def test_indexes_created_if_missing(self, migration_sql: str, index_name: str) -> None:
        assert f"CREATE INDEX IF NOT EXISTS {index_name}" in migration_sql

    @pytest.mark.unit
    async def test_poll_index_is_partial_on_queued(self, migration_sql: str) -> None:
        poll = next(s for s in migration_sql.splitlines() if "idx_messages_queued_poll" in s)
        assert "WHERE status = 'queued'" in poll


class TestModelIndexes:

    @pytest.mark.unit
    @pytest.mark.parametrize("model, column", [
        (Message, "vendor_id"),
        (Message, "conversation_id"),
        (MessageDelivery, "message_id"),
    ])
    def test_foreign_keys_indexed(self, model, column: str) -> None:
        assert inspect(model).columns[column].index is True


class TestEagerLoading:

    @pytest.mark.unit
    def test_one_option_per_relation(self) -> None:
        # vendor, conversation->lead, media, deliveries
        assert len(message_with_relations()) == 4
