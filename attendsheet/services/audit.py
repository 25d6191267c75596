"""
Append-only audit sink.

``append`` schedules the insert on the running loop and returns at once; a
failed write is logged and never propagates to the caller. ``drain`` waits for
everything scheduled so far (used on shutdown and in tests).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from attendsheet.core.clock import Clock, SystemClock
from attendsheet.db.session import SessionFactory
from attendsheet.models.audit import AUDIT_ACTIONS, AuditEntry

logger = logging.getLogger(__name__)


class AuditSink:
    def __init__(self, session_factory: SessionFactory, clock: Clock | None = None) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._pending: set[asyncio.Task] = set()

    def append(
        self,
        *,
        actor: str,
        action: str,
        target: str,
        company_id: str | None = None,
        before: dict | None = None,
        after: dict | None = None,
        reason: str | None = None,
        details: dict | None = None,
    ) -> None:
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")
        values: dict[str, Any] = {
            "created_at": self._clock.now(),
            "actor": actor,
            "action": action,
            "target": target,
            "company_id": company_id,
            "before": before,
            "after": after,
            "reason": reason,
            "details": details,
        }
        task = asyncio.get_running_loop().create_task(self._write(values))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, values: dict[str, Any]) -> None:
        try:
            async with self._session_factory() as session:
                session.add(AuditEntry(**values))
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Audit write failed: %s %s", values["action"], values["target"])

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def list_entries(
        self,
        company_id: str | None = None,
        action: str | None = None,
        target: str | None = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        stmt = select(AuditEntry).order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
        if company_id:
            stmt = stmt.where(AuditEntry.company_id == company_id)
        if action:
            stmt = stmt.where(AuditEntry.action == action)
        if target:
            stmt = stmt.where(AuditEntry.target == target)
        async with self._session_factory() as session:
            result = await session.execute(stmt.limit(limit))
            return list(result.scalars().all())
