"""
Auto-confirm scheduler.

When a sheet is loaded with auto-confirm enabled, a past deadline fires at
once and a deadline inside the look-ahead window arms a one-shot timer.
Deadlines further out are ignored until a later load. Each sheet moves
``idle -> armed -> running -> done`` and runs at most once per process; the
fired deadline is also persisted so a restart does not fire it again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from attendsheet.core.clock import Clock, SystemClock, ensure_utc
from attendsheet.core.exceptions import SheetNotFoundError
from attendsheet.db.session import SessionFactory
from attendsheet.models.confirmation import CONFIRM_PENDING, ConfirmationRecord
from attendsheet.models.sheet import Sheet
from attendsheet.services import state_machine
from attendsheet.services.audit import AuditSink

logger = logging.getLogger(__name__)

IDLE = "idle"
ARMED = "armed"
RUNNING = "running"
DONE = "done"

SYSTEM_ACTOR = "system"


class AutoConfirmScheduler:
    def __init__(
        self,
        session_factory: SessionFactory,
        audit: AuditSink,
        clock: Clock | None = None,
        lookahead_hours: float = 24.0,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._clock = clock or SystemClock()
        self._lookahead = timedelta(hours=lookahead_hours)
        self._status: dict[int, str] = {}
        self._timers: dict[int, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def status(self, sheet_id: int) -> str:
        return self._status.get(sheet_id, IDLE)

    async def on_sheet_loaded(self, sheet: Sheet) -> str:
        """Fire, arm or ignore according to the sheet's deadline. Returns the status."""
        state = self.status(sheet.id)
        if state != IDLE:
            return state

        deadline = ensure_utc(sheet.auto_confirm_at)
        if not sheet.auto_confirm_enabled or deadline is None:
            return state
        if ensure_utc(sheet.auto_confirm_fired_for) == deadline:
            return state

        delay = (deadline - self._clock.now()).total_seconds()
        if delay <= 0:
            logger.info("Sheet %s deadline %s has passed; auto-confirming now", sheet.id, deadline)
            await self._fire_logged(sheet.id, deadline)
        elif delay <= self._lookahead.total_seconds():
            self._arm(sheet.id, deadline, delay)
        return self.status(sheet.id)

    async def _fire_logged(self, sheet_id: int, deadline: datetime) -> None:
        """Fire without propagating storage errors; the sheet drops back to idle and the next load retries."""
        try:
            await self.fire(sheet_id, deadline)
        except (SQLAlchemyError, SheetNotFoundError) as exc:
            logger.warning("Auto-confirm for sheet %s deferred: %s", sheet_id, exc)

    def _arm(self, sheet_id: int, deadline: datetime, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timers[sheet_id] = loop.call_later(delay, self._on_timer, sheet_id, deadline)
        self._status[sheet_id] = ARMED
        logger.info("Auto-confirm armed for sheet %s in %.0fs", sheet_id, delay)

    def _on_timer(self, sheet_id: int, deadline: datetime) -> None:
        self._timers.pop(sheet_id, None)
        task = asyncio.get_running_loop().create_task(self._fire_logged(sheet_id, deadline))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def fire(self, sheet_id: int, deadline: datetime | None = None) -> int:
        """Auto-confirm every pending record of the sheet. Returns the count.

        Re-entrant calls while running or after completion return 0.
        """
        if self.status(sheet_id) in (RUNNING, DONE):
            return 0
        self._status[sheet_id] = RUNNING
        timer = self._timers.pop(sheet_id, None)
        if timer is not None:
            timer.cancel()

        try:
            count = await self._confirm_pending(sheet_id, deadline)
        except Exception:
            logger.exception("Auto-confirm for sheet %s failed", sheet_id)
            self._status[sheet_id] = IDLE
            raise
        self._status[sheet_id] = DONE
        return count

    async def _confirm_pending(self, sheet_id: int, deadline: datetime | None) -> int:
        now = self._clock.now()
        stamp = state_machine.auto_confirm_stamp(now)
        async with self._session_factory() as session:
            sheet = await session.get(Sheet, sheet_id)
            if sheet is None:
                raise SheetNotFoundError(sheet_id)
            deadline = ensure_utc(deadline) or ensure_utc(sheet.auto_confirm_at)
            if deadline is not None and ensure_utc(sheet.auto_confirm_fired_for) == deadline:
                logger.info("Sheet %s deadline already processed", sheet_id)
                return 0

            result = await session.execute(
                select(ConfirmationRecord).where(
                    ConfirmationRecord.sheet_id == sheet_id,
                    ConfirmationRecord.confirm_status == CONFIRM_PENDING,
                )
            )
            records = list(result.scalars().all())
            for record in records:
                state_machine.auto_confirm(record, stamp, now)
            sheet.auto_confirm_fired_for = deadline or now
            await session.commit()
            company_id = sheet.company_id

        self._audit.append(
            actor=SYSTEM_ACTOR,
            action="AUTO_CONFIRM",
            target=f"sheet:{sheet_id}",
            company_id=company_id,
            details={
                "count": len(records),
                "record_ids": [r.id for r in records],
                "deadline": deadline.isoformat() if deadline else None,
                "stamp": stamp,
            },
        )
        logger.info("Auto-confirmed %d record(s) on sheet %s", len(records), sheet_id)
        return len(records)

    def cancel(self, sheet_id: int) -> None:
        timer = self._timers.pop(sheet_id, None)
        if timer is not None:
            timer.cancel()
            if self._status.get(sheet_id) == ARMED:
                self._status[sheet_id] = IDLE

    def reset(self, sheet_id: int) -> None:
        """Forget a sheet so a changed deadline can be scheduled again."""
        self.cancel(sheet_id)
        if self._status.get(sheet_id) != RUNNING:
            self._status.pop(sheet_id, None)

    async def shutdown(self) -> None:
        for sheet_id in list(self._timers):
            self.cancel(sheet_id)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
