"""
Audit log and health endpoints.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from attendsheet.api.v1.deps import get_current_active_user, get_db, get_services
from attendsheet.core.config import settings
from attendsheet.models.user import User
from attendsheet.schemas.common import AuditRead, HealthResponse
from attendsheet.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["audit"])


@router.get("/audit", response_model=list[AuditRead])
async def list_audit(
    company_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    target: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    services: Services = Depends(get_services),
    _user: User = Depends(get_current_active_user),
) -> list[AuditRead]:
    entries = await services.audit.list_entries(company_id, action, target, limit)
    return [AuditRead.model_validate(e) for e in entries]


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """Public health check: DB and Redis connectivity."""
    result = HealthResponse(db=False, redis=False)

    try:
        await db.execute(select(1))
        result.db = True
    except Exception as e:
        logger.error("Health check DB failure: %s", e)

    try:
        r = aioredis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        result.redis = True
    except Exception as e:
        logger.error("Health check Redis failure: %s", e)

    result.status = "ok" if result.db else "degraded"
    return result
