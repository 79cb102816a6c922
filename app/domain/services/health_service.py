"""
Readiness של ה-worker: DB (התור עצמו), broker של Celery, ו-Cloud API.

Cloud API לא נבדק בקריאת רשת — ה-circuit breaker המשותף כבר משקף את
מצבו לפי השליחות האחרונות, ו-probe לא צריך לצרוך טוקן של דייר.
"""
import asyncio
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.circuit_breaker import get_whatsapp_cloud_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

OK = "ok"

# הערכים שחוזרים ל-client — בלי hostnames או הודעות חריגה
DB_UNAVAILABLE = "error: db_unavailable"
CELERY_UNAVAILABLE = "error: celery_unavailable"
WHATSAPP_CIRCUIT_OPEN = "error: whatsapp_circuit_open"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Readiness: database check failed", extra_data={"error": str(e)})
        return DB_UNAVAILABLE
    return OK


async def _check_celery() -> str:
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, socket_connect_timeout=2)
        try:
            await client.ping()
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Readiness: broker ping failed", extra_data={"error": str(e)})
        return CELERY_UNAVAILABLE
    return OK


async def _check_whatsapp_cloud() -> str:
    breaker = get_whatsapp_cloud_circuit_breaker()
    return WHATSAPP_CIRCUIT_OPEN if breaker.is_open else OK


_CHECKS: dict[str, Callable[[], Awaitable[str]]] = {
    "db": lambda: _check_db(),
    "celery": lambda: _check_celery(),
    "whatsapp_cloud": lambda: _check_whatsapp_cloud(),
}


async def check_readiness() -> dict[str, Any]:
    """
    {"status": "healthy" | "degraded", "db": ..., "celery": ..., "whatsapp_cloud": ...}

    כל בדיקה מחזירה "ok" או "error: <סיבה>"; הבדיקות רצות במקביל.
    """
    results = await asyncio.gather(*(check() for check in _CHECKS.values()))
    checks = dict(zip(_CHECKS, results))

    healthy = all(result == OK for result in checks.values())
    if not healthy:
        logger.warning("Readiness degraded", extra_data=checks)

    return {"status": "healthy" if healthy else "degraded", **checks}
