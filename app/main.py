"""
WhatsApp Delivery Worker — שכבת HTTP: health probes ו-endpoints לתחזוקת התור.

השליחה עצמה רצה בתהליך נפרד (app.workers.runner) או מ-Celery beat.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from app.api.routes import router as api_router
from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.core.middleware import setup_exception_handlers, setup_middleware
from app.db.database import Base, engine
from app.domain.services.health_service import check_readiness

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME,
)

logger = get_logger(__name__)


async def _prepare_schema() -> None:
    """
    create_all לטבלאות חסרות (פיתוח / בדיקות), ואז מיגרציות idempotent.

    create_all לא משנה טבלאות קיימות, לכן עמודות ואינדקסים של ה-worker
    מגיעים מהמיגרציות — שרצות רק על PostgreSQL.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if conn.dialect.name == "postgresql":
            from app.db.migrations import run_all_migrations

            await run_all_migrations(conn)
    logger.info("Schema ready", extra_data={"dialect": engine.dialect.name})


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("Starting API", extra_data={"app_name": settings.APP_NAME})
    await _prepare_schema()
    try:
        yield
    finally:
        await engine.dispose()
        logger.info("API stopped, database pool disposed")


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Worker לשליחת הודעות WhatsApp יוצאות עבור דיירים מרובים.",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Health", "description": "liveness / readiness probes."},
        {
            "name": "Admin Debug",
            "description": "תחזוקת תור ההודעות היוצאות: circuit breaker, סיכום, retry ידני, שחרור הודעות תקועות.",
        },
    ],
)

setup_middleware(app)
setup_exception_handlers(app)
app.include_router(api_router, prefix="/api")


_READINESS_EXAMPLE = {
    "status": "degraded",
    "db": "ok",
    "celery": "error: celery_unavailable",
    "whatsapp_cloud": "ok",
}


@app.get("/health", tags=["Health"], summary="Liveness probe")
async def health_check() -> dict[str, str]:
    """התהליך חי ומגיב; לא בודק תלויות."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    tags=["Health"],
    summary="Readiness probe",
    description=(
        "DB, Celery broker ו-circuit breaker של Cloud API. "
        "200 כשהכל תקין, 503 עם status=degraded אחרת."
    ),
    responses={503: {"content": {"application/json": {"example": _READINESS_EXAMPLE}}}},
)
async def readiness_check() -> JSONResponse:
    result = await check_readiness()
    return JSONResponse(
        content=result,
        status_code=200 if result["status"] == "healthy" else 503,
    )
