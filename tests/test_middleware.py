"""
בדיקות ל-Middleware — app/core/middleware.py

מכסה:
- RequestContextMiddleware: correlation ID ולוג בקשות
- Exception handlers: AppException ו-Exception גנרי
"""
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.testclient import TestClient

from app.core.exceptions import MessageNotFoundError
from app.core.middleware import (
    CORRELATION_HEADER,
    setup_exception_handlers,
    setup_middleware,
)


def _build_app() -> FastAPI:
    """אפליקציה מינימלית עם ה-middleware וה-handlers של השירות."""
    app = FastAPI()
    setup_middleware(app)
    setup_exception_handlers(app)

    @app.get("/ping")
    async def ping(request: Request) -> PlainTextResponse:
        return PlainTextResponse(request.state.correlation_id)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "healthy"}

    @app.get("/missing")
    async def missing() -> None:
        raise MessageNotFoundError("m-404")

    @app.get("/boom")
    async def boom() -> None:
        raise ValueError("שגיאת בדיקה")

    return app


@pytest.fixture
def client() -> TestClient:
    return TestClient(_build_app(), raise_server_exceptions=False)


class TestCorrelationId:

    @pytest.mark.unit
    def test_generated_when_missing(self, client: TestClient) -> None:
        response = client.get("/ping")

        cid = response.headers[CORRELATION_HEADER]
        assert len(cid) == 8
        assert response.text == cid

    @pytest.mark.unit
    def test_incoming_header_propagated(self, client: TestClient) -> None:
        response = client.get("/ping", headers={CORRELATION_HEADER: "ops-retry-42"})

        assert response.headers[CORRELATION_HEADER] == "ops-retry-42"
        assert response.text == "ops-retry-42"

    @pytest.mark.unit
    def test_invalid_incoming_header_replaced(self, client: TestClient) -> None:
        response = client.get("/ping", headers={CORRELATION_HEADER: "bad id\twith spaces"})

        assert response.headers[CORRELATION_HEADER] != "bad id\twith spaces"
        assert len(response.headers[CORRELATION_HEADER]) == 8


class TestRequestLogging:

    @pytest.mark.unit
    def test_request_logged(self, client: TestClient) -> None:
        with patch("app.core.middleware.logger") as mock_logger:
            client.get("/ping")

        mock_logger.info.assert_called_once()
        extra = mock_logger.info.call_args.kwargs["extra_data"]
        assert extra["path"] == "/ping"
        assert extra["status_code"] == 200

    @pytest.mark.unit
    def test_health_probe_not_logged(self, client: TestClient) -> None:
        with patch("app.core.middleware.logger") as mock_logger:
            client.get("/health")

        mock_logger.info.assert_not_called()
        mock_logger.warning.assert_not_called()


class TestExceptionHandlers:

    @pytest.mark.unit
    def test_app_exception_mapped_to_status_and_code(self, client: TestClient) -> None:
        response = client.get("/missing")

        assert response.status_code == 404
        body = response.json()
        assert body["error"]["code"] == "ERR_2001"
        assert CORRELATION_HEADER in response.headers

    @pytest.mark.unit
    def test_unexpected_exception_is_500_without_details(self, client: TestClient) -> None:
        response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "ERR_1000"
        assert "שגיאת בדיקה" not in response.text
