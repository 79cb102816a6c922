"""
בדיקות להגדרות — ולידציה בזמן הפעלה במקום כשלון באמצע שליחה
"""
import warnings

import pytest
from pydantic import ValidationError

from app.core.config import Settings

VALID_KEY = "ab" * 32
LOCAL_DB = "sqlite+aiosqlite:///:memory:"


def _settings(**overrides) -> Settings:
    values = {"ENCRYPTION_KEY": VALID_KEY, "DATABASE_URL": LOCAL_DB}
    values.update(overrides)
    return Settings(**values)


class TestEncryptionKey:

    @pytest.mark.unit
    def test_missing_key_fails_in_production(self):
        with pytest.raises(ValueError, match="ENCRYPTION_KEY"):
            _settings(ENCRYPTION_KEY="", DEBUG=False)

    @pytest.mark.unit
    def test_missing_key_warns_in_debug(self):
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            s = _settings(ENCRYPTION_KEY="", DEBUG=True)

        assert s.ENCRYPTION_KEY == ""
        assert any("ENCRYPTION_KEY" in str(x.message) for x in w)

    @pytest.mark.unit
    @pytest.mark.parametrize("key", ["not-hex", "abcd", "ab" * 31])
    def test_malformed_key_rejected(self, key: str):
        with pytest.raises(ValidationError):
            _settings(ENCRYPTION_KEY=key)


class TestDatabaseUrl:

    @pytest.mark.unit
    @pytest.mark.parametrize("url", [
        "postgres://u:p@localhost:5432/erpwa",
        "postgresql://u:p@localhost:5432/erpwa",
    ])
    def test_converted_to_asyncpg(self, url: str):
        assert _settings(DATABASE_URL=url).DATABASE_URL == (
            "postgresql+asyncpg://u:p@localhost:5432/erpwa"
        )

    @pytest.mark.unit
    def test_debug_with_external_db_warns(self):
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            _settings(DEBUG=True, DATABASE_URL="postgresql+asyncpg://u:p@db.example.com:5432/erpwa")

        assert any("DEBUG=True" in str(x.message) for x in w)


class TestWorkerSettings:

    @pytest.mark.unit
    def test_defaults(self):
        s = _settings()

        assert s.WORKER_MAX_RETRIES == 2
        assert s.WORKER_SEND_DELAY_SECONDS == 1.2
        assert s.WORKER_IDLE_POLL_SECONDS == 2.0
        assert s.WORKER_FAILURE_BACKOFF_SECONDS == 3.0
        assert s.WORKER_DEFAULT_COUNTRY_PREFIX == "91"
        assert s.worker_message_types == ["image", "template"]
        assert s.transient_status_codes == {429, 500, 502, 503, 504}

    @pytest.mark.unit
    def test_max_retries_must_be_positive(self):
        with pytest.raises(ValidationError):
            _settings(WORKER_MAX_RETRIES=0)

    @pytest.mark.unit
    def test_country_prefix_normalized(self):
        assert _settings(WORKER_DEFAULT_COUNTRY_PREFIX=" +972 ").WORKER_DEFAULT_COUNTRY_PREFIX == "972"

    @pytest.mark.unit
    def test_country_prefix_digits_only(self):
        with pytest.raises(ValidationError):
            _settings(WORKER_DEFAULT_COUNTRY_PREFIX="IN")

    @pytest.mark.unit
    def test_message_types_normalized(self):
        assert _settings(WORKER_MESSAGE_TYPES=" Image ").worker_message_types == ["image"]

    @pytest.mark.unit
    def test_unsupported_message_type_rejected(self):
        with pytest.raises(ValidationError):
            _settings(WORKER_MESSAGE_TYPES="image,text")

    @pytest.mark.unit
    def test_graph_url_trailing_slash_stripped(self):
        assert _settings(WHATSAPP_GRAPH_API_URL="https://graph.facebook.com/").WHATSAPP_GRAPH_API_URL == (
            "https://graph.facebook.com"
        )


class TestDrainTimeLimit:

    @pytest.mark.unit
    def test_default_batch_fits_soft_limit(self):
        s = _settings()

        # 10 הודעות × (timeout של 15s + backoff של 3s) = 180s
        assert s.WORKER_DRAIN_BATCH_SIZE == 10
        assert s.WORKER_DRAIN_TIME_LIMIT_SECONDS == 240

    @pytest.mark.unit
    def test_batch_that_outlives_soft_limit_rejected(self):
        with pytest.raises(ValidationError, match="WORKER_DRAIN_BATCH_SIZE"):
            _settings(WORKER_DRAIN_BATCH_SIZE=50)

    @pytest.mark.unit
    def test_longer_limit_allows_bigger_batch(self):
        s = _settings(WORKER_DRAIN_BATCH_SIZE=50, WORKER_DRAIN_TIME_LIMIT_SECONDS=900)

        assert s.WORKER_DRAIN_BATCH_SIZE == 50
