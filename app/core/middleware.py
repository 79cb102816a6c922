"""
FastAPI Middleware

RequestContextMiddleware קושר correlation ID לכל בקשה (מה-header או חדש),
מחזיר אותו ב-X-Correlation-ID ורושם שורת לוג עם זמן טיפול. probes של
/health לא נרשמים — הם רצים כל כמה שניות.
"""
import re
import time
from typing import Any, Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode
from app.core.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
# ערך מה-client נכנס ללוגים — רק מזהים קצרים ופשוטים
_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_QUIET_PATH_PREFIXES = ("/health",)


def _incoming_correlation_id(request: Request) -> str | None:
    value = request.headers.get(CORRELATION_HEADER)
    if value and _VALID_CORRELATION_ID.match(value):
        return value
    return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Correlation ID + request logging"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(_incoming_correlation_id(request))
        request.state.correlation_id = correlation_id

        started = time.perf_counter()
        path = request.url.path
        log_fields: dict[str, Any] = {"method": request.method, "path": path}

        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(
                f"Request failed: {request.method} {path}",
                extra_data={
                    **log_fields,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                    "error": str(e),
                },
            )
            raise

        response.headers[CORRELATION_HEADER] = correlation_id

        if not path.startswith(_QUIET_PATH_PREFIXES):
            log = logger.info if response.status_code < 400 else logger.warning
            log(
                f"{request.method} {path} -> {response.status_code}",
                extra_data={
                    **log_fields,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
        return response


def _error_response(status_code: int, body: dict[str, Any]) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body,
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """AppException -> תשובת JSON עם קוד השגיאה והסטטוס שלה"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        },
    )
    return _error_response(exc.status_code, exc.to_dict())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """חריגה לא צפויה — 500 בלי לחשוף פרטים ל-client"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={"exception_type": type(exc).__name__, "path": request.url.path},
        exc_info=exc,
    )
    return _error_response(
        500,
        {
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {},
            }
        },
    )


def setup_middleware(app: FastAPI) -> None:
    app.add_middleware(RequestContextMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
