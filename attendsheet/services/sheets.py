"""
Sheet service: creation from ingested rows, raw-fact edits with synchronous
recompute, employee view / confirm events and sheet settings.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from attendsheet.core.clock import Clock, SystemClock, ensure_utc
from attendsheet.core.exceptions import RecordNotFoundError, SheetNotFoundError
from attendsheet.db.session import SessionFactory
from attendsheet.engine.metrics import compute_metrics
from attendsheet.models.confirmation import SENT, ConfirmationRecord
from attendsheet.models.rule_config import RuleConfig
from attendsheet.models.sheet import Sheet
from attendsheet.schemas.sheets import (EmployeeRow, SheetSettings,
                                        SheetSettingsUpdate)
from attendsheet.services import state_machine
from attendsheet.services.audit import AuditSink
from attendsheet.services.rule_store import RuleConfigStore
from attendsheet.services.scheduler import AutoConfirmScheduler

logger = logging.getLogger(__name__)


def _metrics_for(daily_data: dict, config: RuleConfig, month: str) -> dict:
    return compute_metrics(daily_data, config.rules, rule_version=config.version, month=month).to_dict()


class SheetService:
    def __init__(
        self,
        session_factory: SessionFactory,
        rules: RuleConfigStore,
        scheduler: AutoConfirmScheduler,
        audit: AuditSink,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._rules = rules
        self._scheduler = scheduler
        self._audit = audit
        self._clock = clock or SystemClock()

    # ── Sheets ──────────────────────────────────────────────────────
    async def create_sheet(
        self,
        company_id: str,
        month: str,
        employees: list[EmployeeRow],
        actor: str,
        title: str | None = None,
        settings: SheetSettings | None = None,
    ) -> Sheet:
        settings = settings or SheetSettings()
        async with self._session_factory() as session:
            sheet = Sheet(
                company_id=company_id,
                month=month,
                title=title or f"{month} 考勤确认",
                auto_confirm_enabled=settings.auto_confirm_enabled,
                auto_confirm_at=settings.auto_confirm_at,
                feedback_contact=settings.feedback_contact,
                show_columns=settings.show_columns,
                reminder_text=settings.reminder_text,
                created_by=actor,
                created_at=self._clock.now(),
            )
            session.add(sheet)
            await session.commit()
            await session.refresh(sheet)

        count = await self._ingest(sheet, employees)
        self._audit.append(
            actor=actor,
            action="SHEET_CREATE",
            target=f"sheet:{sheet.id}",
            company_id=company_id,
            details={"month": month, "records": count},
        )
        logger.info("Sheet %s created for %s %s with %d record(s)", sheet.id, company_id, month, count)
        return sheet

    async def import_records(self, sheet_id: int, employees: list[EmployeeRow], actor: str) -> int:
        """Add or refresh records on an existing sheet."""
        sheet = await self._get_sheet(sheet_id)
        count = await self._ingest(sheet, employees)
        self._audit.append(
            actor=actor,
            action="EDIT",
            target=f"sheet:{sheet_id}",
            company_id=sheet.company_id,
            details={"imported": count},
        )
        return count

    async def _ingest(self, sheet: Sheet, employees: list[EmployeeRow]) -> int:
        config = await self._rules.get_record(sheet.company_id)
        for row in employees:
            await self._upsert_record(sheet, row, config)
        return len(employees)

    async def _upsert_record(self, sheet: Sheet, row: EmployeeRow, config: RuleConfig) -> None:
        metrics = _metrics_for(row.daily_data, config, sheet.month)
        key = (
            ConfirmationRecord.employee_id == row.employee_id,
            ConfirmationRecord.month == sheet.month,
            ConfirmationRecord.company_id == sheet.company_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(select(ConfirmationRecord).where(*key))
            record = result.scalar_one_or_none()
            if record is None:
                session.add(
                    ConfirmationRecord(
                        sheet_id=sheet.id,
                        company_id=sheet.company_id,
                        month=sheet.month,
                        employee_id=row.employee_id,
                        employee_name=row.employee_name,
                        department=row.department,
                        daily_data=dict(row.daily_data),
                        metrics=metrics,
                    )
                )
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    await session.rollback()
                    result = await session.execute(select(ConfirmationRecord).where(*key))
                    record = result.scalar_one()
                    logger.info("Concurrent insert for %s %s resolved", row.employee_id, sheet.month)

            record.sheet_id = sheet.id
            record.employee_name = row.employee_name
            record.department = row.department
            if record.daily_data != row.daily_data:
                record.daily_data = dict(row.daily_data)
                if record.send_status == SENT:
                    record.is_modified_after_sent = True
            record.metrics = metrics
            await session.commit()

    async def _get_sheet(self, sheet_id: int) -> Sheet:
        async with self._session_factory() as session:
            sheet = await session.get(Sheet, sheet_id)
        if sheet is None:
            raise SheetNotFoundError(sheet_id)
        return sheet

    async def list_sheets(self, company_id: str | None = None) -> list[Sheet]:
        stmt = select(Sheet).order_by(Sheet.month.desc(), Sheet.id.desc())
        if company_id:
            stmt = stmt.where(Sheet.company_id == company_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_records(self, sheet_id: int) -> list[ConfirmationRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConfirmationRecord)
                .where(ConfirmationRecord.sheet_id == sheet_id)
                .order_by(ConfirmationRecord.id)
            )
            return list(result.scalars().all())

    async def load_sheet(self, sheet_id: int) -> tuple[Sheet, list[ConfirmationRecord]]:
        """Load a sheet and its records, giving the scheduler a look at the deadline."""
        sheet = await self._get_sheet(sheet_id)
        await self._scheduler.on_sheet_loaded(sheet)
        # the scheduler may have just fired, so records are read afterwards
        sheet = await self._get_sheet(sheet_id)
        return sheet, await self.get_records(sheet_id)

    async def update_settings(self, sheet_id: int, patch: SheetSettingsUpdate, actor: str) -> Sheet:
        changes = patch.model_dump(exclude_unset=True)
        async with self._session_factory() as session:
            sheet = await session.get(Sheet, sheet_id)
            if sheet is None:
                raise SheetNotFoundError(sheet_id)
            before = {k: _jsonable(getattr(sheet, k)) for k in changes}
            old_deadline = (sheet.auto_confirm_enabled, ensure_utc(sheet.auto_confirm_at))
            for field, value in changes.items():
                setattr(sheet, field, value)
            await session.commit()
            await session.refresh(sheet)

        self._audit.append(
            actor=actor,
            action="EDIT",
            target=f"sheet:{sheet_id}",
            company_id=sheet.company_id,
            before=before,
            after={k: _jsonable(getattr(sheet, k)) for k in changes},
        )
        if (sheet.auto_confirm_enabled, ensure_utc(sheet.auto_confirm_at)) != old_deadline:
            self._scheduler.reset(sheet_id)
            await self._scheduler.on_sheet_loaded(sheet)
        return sheet

    async def recompute_sheet(self, sheet_id: int, actor: str) -> int:
        """Re-run the engine for every record with the company's current rules."""
        sheet = await self._get_sheet(sheet_id)
        config = await self._rules.get_record(sheet.company_id)
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConfirmationRecord).where(ConfirmationRecord.sheet_id == sheet_id)
            )
            records = list(result.scalars().all())
            for record in records:
                record.metrics = _metrics_for(record.daily_data or {}, config, record.month)
            await session.commit()
        self._audit.append(
            actor=actor,
            action="EDIT",
            target=f"sheet:{sheet_id}",
            company_id=sheet.company_id,
            reason=f"recompute with rules v{config.version}",
            details={"records": len(records)},
        )
        return len(records)

    # ── Records ─────────────────────────────────────────────────────
    async def update_daily_data(
        self,
        record_id: int,
        patch: dict[str, str | None],
        actor: str,
        reason: str | None = None,
        replace: bool = False,
    ) -> ConfirmationRecord:
        async with self._session_factory() as session:
            record = await session.get(ConfirmationRecord, record_id)
            if record is None:
                raise RecordNotFoundError(record_id)
            company_id = record.company_id
        config = await self._rules.get_record(company_id)

        async with self._session_factory() as session:
            record = await session.get(ConfirmationRecord, record_id)
            if record is None:
                raise RecordNotFoundError(record_id)
            old = dict(record.daily_data or {})
            new = {} if replace else dict(old)
            for day, value in patch.items():
                if value is None:
                    new.pop(day, None)
                else:
                    new[day] = value
            changed = {k for k in set(old) | set(new) if old.get(k) != new.get(k)}

            record.daily_data = new
            record.metrics = _metrics_for(new, config, record.month)
            if changed and record.send_status == SENT:
                record.is_modified_after_sent = True
            await session.commit()

        if changed:
            self._audit.append(
                actor=actor,
                action="EDIT",
                target=f"record:{record_id}",
                company_id=record.company_id,
                before={k: old.get(k) for k in sorted(changed)},
                after={k: new.get(k) for k in sorted(changed)},
                reason=reason,
            )
        return record

    async def mark_viewed(self, record_id: int, actor: str) -> ConfirmationRecord:
        async with self._session_factory() as session:
            record = await session.get(ConfirmationRecord, record_id)
            if record is None:
                raise RecordNotFoundError(record_id)
            transition = state_machine.mark_viewed(record, self._clock.now())
            await session.commit()
        if transition.changed:
            self._audit.append(
                actor=actor,
                action="VIEW",
                target=f"record:{record_id}",
                company_id=record.company_id,
                before=transition.before,
                after=transition.after,
            )
        return record

    async def confirm(self, record_id: int, signature: str, actor: str) -> ConfirmationRecord:
        async with self._session_factory() as session:
            record = await session.get(ConfirmationRecord, record_id)
            if record is None:
                raise RecordNotFoundError(record_id)
            transition = state_machine.confirm(record, signature, self._clock.now())
            await session.commit()
        self._audit.append(
            actor=actor,
            action="CONFIRM",
            target=f"record:{record_id}",
            company_id=record.company_id,
            before=transition.before,
            after={**transition.after, "signature": "<captured>"},
        )
        logger.info("Record %s confirmed by %s", record_id, record.employee_id)
        return record


def _jsonable(value):
    return value.isoformat() if hasattr(value, "isoformat") else value
