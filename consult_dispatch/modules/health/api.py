from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from consult_dispatch.db.session import get_session
from consult_dispatch.modules.shared.schemas import ReportModel

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class DatabaseHealth(ReportModel):
    status: str
    latency_ms: float
    error: str | None = None


class HealthResponse(ReportModel):
    status: str
    database: DatabaseHealth


@router.get("/health", response_model=HealthResponse)
async def health(session: AsyncSession = Depends(get_session)) -> HealthResponse:
    started = time.monotonic()
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Health check database probe failed error=%s", exc)
        database = DatabaseHealth(
            status="down",
            latency_ms=round((time.monotonic() - started) * 1000, 2),
            error=str(exc),
        )
    else:
        database = DatabaseHealth(status="up", latency_ms=round((time.monotonic() - started) * 1000, 2))
    return HealthResponse(status="ok" if database.status == "up" else "degraded", database=database)
