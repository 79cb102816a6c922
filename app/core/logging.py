"""
Structured Logging Infrastructure

כל רשומה היא שורת JSON אחת בפרודקשן. correlation ID נקשר לכל בקשת HTTP
(middleware) ולכל הודעה שה-worker מעבד, ומזהה ההודעה עצמו מצורף לרשומה,
כך שאפשר לעקוב אחרי claim → send → record של הודעה אחת.

שימוש:
    logger = get_logger(__name__)
    logger.info("Message sent", extra_data={"message_id": message.id})
"""
import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
message_id_var: ContextVar[str] = ContextVar("message_id", default="")

# מפתחות ב-extra_data שלא נכתבים ללוג כמו שהם
REDACTED_KEYS = frozenset({
    "access_token",
    "authorization",
    "token",
    "encryption_key",
    "admin_api_key",
})


def _redact(data: dict[str, Any]) -> dict[str, Any]:
    return {
        key: "***" if str(key).lower() in REDACTED_KEYS else value
        for key, value in data.items()
    }


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def __init__(self, app_name: str = "wa-delivery-worker") -> None:
        super().__init__()
        self.app_name = app_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "app": self.app_name,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        if cid := correlation_id_var.get():
            entry["correlation_id"] = cid
        if message_id := message_id_var.get():
            entry["message_id"] = message_id

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """פורמט קריא לפיתוח מקומי (DEBUG=True)"""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s] | %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        record.correlation_id = correlation_id_var.get() or "-"
        line = super().format(record)
        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            line = f"{line} {json.dumps(extra_data, ensure_ascii=False, default=str)}"
        return line


class StructuredLogger(logging.Logger):
    """
    Logger שמקבל extra_data={...} בכל מתודת לוג (info, warning, exception...).

    הערכים עוברים מיסוך לפני שהם נצמדים לרשומה, כך שטוקן שנשלח בטעות
    לא מגיע ל-stdout.
    """

    def _log(
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra_data: dict[str, Any] | None = None,
    ) -> None:
        if extra_data:
            extra = {**(extra or {}), "extra_data": _redact(extra_data)}
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    app_name: str = "wa-delivery-worker"
) -> None:
    """
    Configure the root logger with a single stdout handler.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ...)
        json_format: JSON lines for production, console format otherwise
        app_name: Value of the "app" field in JSON records
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(app_name=app_name) if json_format else ConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(level.upper())

    # ספריות רועשות — httpx רושם כל בקשה ל-Graph API ב-INFO
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation ID to the current context (generated if missing)"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Current correlation ID; one is generated and bound if none is set"""
    return correlation_id_var.get() or set_correlation_id()


@contextmanager
def message_correlation(message_id: str) -> Iterator[str]:
    """
    קשירת correlation ID ומזהה הודעה לאיטרציה אחת של ה-worker.

    הערכים הקודמים משוחזרים ביציאה, כך שאיטרציה אחת לא "דולפת" לבאה.
    """
    cid_token = correlation_id_var.set(f"msg-{message_id[:8]}-{generate_correlation_id()[:4]}")
    mid_token = message_id_var.set(message_id)
    try:
        yield correlation_id_var.get()
    finally:
        message_id_var.reset(mid_token)
        correlation_id_var.reset(cid_token)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance"""
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str):
    """Log start, completion (with duration) and failure of an async operation"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            started = time.perf_counter()
            logger.debug(f"Starting {operation_name}", extra_data={"operation": operation_name})

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.exception(
                    f"Failed {operation_name}: {e}",
                    extra_data={
                        "operation": operation_name,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                    },
                )
                raise

            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
            return result

        return wrapper
    return decorator
