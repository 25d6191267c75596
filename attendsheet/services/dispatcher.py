"""
Notification dispatcher: batch send and recall over the two channels.

Channel calls for every record in a batch run concurrently, each bounded by a
timeout, and are collected with a settle-all gather so one failure never
aborts a sibling. Lifecycle transitions are then applied in a single session
against freshly loaded rows.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from datetime import datetime, timedelta

from sqlalchemy import select

from attendsheet.core.clock import Clock, SystemClock, ensure_utc
from attendsheet.core.exceptions import (AttendSheetError, ChannelError,
                                         ChannelTimeoutError,
                                         InvalidTransitionError,
                                         SheetNotFoundError)
from attendsheet.db.session import SessionFactory
from attendsheet.models.confirmation import SENT, ConfirmationRecord, DispatchReceipt
from attendsheet.models.sheet import Sheet
from attendsheet.schemas.results import BatchResult, RecordFailure
from attendsheet.services import state_machine
from attendsheet.services.archive import ArchiveReconciler
from attendsheet.services.audit import AuditSink
from attendsheet.services.channels import ChannelProvider
from attendsheet.services.directory import ChannelIdentity, EmployeeDirectory

logger = logging.getLogger(__name__)

RESEND_REQUIRED = "record already sent; resend required"


# ── Payloads ────────────────────────────────────────────────────────
def build_message_payload(record: ConfirmationRecord, sheet: Sheet, action_url: str) -> dict:
    m = record.metrics or {}
    form = [
        {"key": "正常出勤天数：", "value": str(m.get("attended_days", 0))},
        {"key": "是否全勤：", "value": "是" if m.get("is_full_attendance") else "否"},
        {"key": "迟到累计：", "value": f"{m.get('late_minutes', 0):g} 分钟"},
        {"key": "豁免后迟到：", "value": f"{m.get('exempted_late_minutes', 0):g} 分钟"},
        {"key": "备注：", "value": str((record.daily_data or {}).get("备注") or "-")},
    ]
    return {
        "msgtype": "oa",
        "oa": {
            "message_url": action_url,
            "head": {"text": f"{sheet.month}考勤确认单"},
            "body": {
                "title": "请确认您的考勤信息",
                "form": form,
                "content": sheet.reminder_text
                or "【重要提示】请仔细核对以上数据，如有疑问请及时反馈 HR。",
                "author": sheet.feedback_contact or "考勤系统",
            },
        },
        "status_bar": {"status_value": "待确认", "action_url": action_url},
    }


def task_due_time(sheet: Sheet, now: datetime) -> datetime:
    """Sheet deadline, or 18:30 today when none is set."""
    deadline = ensure_utc(sheet.auto_confirm_at)
    if deadline is not None:
        return deadline
    return now.replace(hour=18, minute=30, second=0, microsecond=0)


def build_task_payload(record: ConfirmationRecord, sheet: Sheet, action_url: str, now: datetime) -> dict:
    m = record.metrics or {}
    due = task_due_time(sheet, now)
    due_ms = int(due.timestamp() * 1000)
    return {
        "subject": sheet.title,
        "description": "考勤确认助手",
        "dueTime": due_ms,
        "reminderTimeStamp": due_ms - int(timedelta(hours=1).total_seconds() * 1000),
        "detailUrl": {"appUrl": action_url, "pcUrl": action_url},
        "contentFieldList": [
            {"fieldKey": "正常出勤天数", "fieldValue": str(m.get("attended_days", 0))},
            {"fieldKey": "是否全勤", "fieldValue": "是" if m.get("is_full_attendance") else "否"},
            {"fieldKey": "豁免后迟到", "fieldValue": f"{m.get('exempted_late_minutes', 0):g} 分钟"},
        ],
        "todoType": "TODO",
    }


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: SessionFactory,
        channels: ChannelProvider,
        directory: EmployeeDirectory,
        audit: AuditSink,
        archive: ArchiveReconciler | None = None,
        clock: Clock | None = None,
        timeout: float = 10.0,
        confirm_url_template: str = "{user_id}/{month}",
    ) -> None:
        self._session_factory = session_factory
        self._channels = channels
        self._directory = directory
        self._audit = audit
        self._archive = archive
        self._clock = clock or SystemClock()
        self._timeout = timeout
        self._confirm_url_template = confirm_url_template

    async def _call(self, operation: str, coro: Awaitable):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise ChannelTimeoutError(f"{operation} timed out after {self._timeout:g}s") from exc

    async def _load(self, session, sheet_id: int | None, record_ids: list[int]) -> dict[int, ConfirmationRecord]:
        stmt = select(ConfirmationRecord).where(ConfirmationRecord.id.in_(record_ids))
        if sheet_id is not None:
            stmt = stmt.where(ConfirmationRecord.sheet_id == sheet_id)
        result = await session.execute(stmt)
        return {r.id: r for r in result.scalars().all()}

    # ── Send ────────────────────────────────────────────────────────
    async def send(
        self,
        sheet_id: int,
        record_ids: list[int],
        actor: str,
        resend: bool = False,
    ) -> BatchResult:
        outcome = BatchResult(action="send")
        record_ids = list(dict.fromkeys(record_ids))

        async with self._session_factory() as session:
            sheet = await session.get(Sheet, sheet_id)
            if sheet is None:
                raise SheetNotFoundError(sheet_id)
            records = await self._load(session, sheet_id, record_ids)

        now = self._clock.now()
        eligible: list[tuple[ConfirmationRecord, ChannelIdentity]] = []
        for rid in record_ids:
            record = records.get(rid)
            if record is None:
                outcome.failed.append(RecordFailure(record_id=rid, error="record not found"))
                continue
            if record.send_status == SENT and not resend:
                outcome.failed.append(
                    RecordFailure(record_id=rid, employee_id=record.employee_id, error=RESEND_REQUIRED)
                )
                continue
            identity = await self._directory.resolve(record.employee_id)
            if identity is None:
                outcome.failed.append(
                    RecordFailure(
                        record_id=rid,
                        employee_id=record.employee_id,
                        error="employee not found in directory",
                    )
                )
                continue
            eligible.append((record, identity))

        settled = await asyncio.gather(
            *(self._dispatch_one(record, identity, sheet, now) for record, identity in eligible),
            return_exceptions=True,
        )

        receipts: dict[int, DispatchReceipt] = {}
        for (record, _), result in zip(eligible, settled):
            if isinstance(result, DispatchReceipt):
                receipts[record.id] = result
            else:
                outcome.failed.append(
                    RecordFailure(record_id=record.id, employee_id=record.employee_id, error=str(result))
                )

        transitions: list[tuple[ConfirmationRecord, state_machine.Transition]] = []
        if receipts:
            transitions = await self._apply_sent(receipts, now, resend, outcome)

        outcome.failed.sort(key=lambda f: f.record_id)
        details = {
            "sheet_id": sheet_id,
            "resend": resend,
            "failed": [f.record_id for f in outcome.failed],
            "summary": outcome.summary,
        }
        self._append_transitions("SEND", actor, transitions, details)
        logger.info("Send for sheet %s: %s", sheet_id, outcome.summary)
        return outcome

    def _append_transitions(
        self,
        action: str,
        actor: str,
        transitions: list[tuple[ConfirmationRecord, state_machine.Transition]],
        details: dict,
    ) -> None:
        """One audit entry per applied transition; the batch outcome rides along in details."""
        for record, transition in transitions:
            self._audit.append(
                actor=actor,
                action=action,
                target=f"record:{record.id}",
                company_id=record.company_id,
                before=transition.before,
                after=transition.after,
                details=details,
            )

    async def _dispatch_one(
        self,
        record: ConfirmationRecord,
        identity: ChannelIdentity,
        sheet: Sheet,
        now: datetime,
    ) -> DispatchReceipt:
        action_url = self._confirm_url_template.format(user_id=identity.user_id, month=record.month)
        message, task = await asyncio.gather(
            self._call(
                "send_message",
                self._channels.send_message(identity.user_id, build_message_payload(record, sheet, action_url)),
            ),
            self._call(
                "create_task",
                self._channels.create_task(
                    identity.union_id, build_task_payload(record, sheet, action_url, now)
                ),
            ),
            return_exceptions=True,
        )
        errors = [r for r in (message, task) if isinstance(r, BaseException)]
        if not errors:
            return DispatchReceipt(corp_task_id=str(message), todo_task_id=str(task))

        # one side may have delivered; its id is not persisted
        if not isinstance(message, BaseException):
            logger.warning("Orphaned message %s for record %s", message, record.id)
        if not isinstance(task, BaseException):
            logger.warning("Orphaned task %s for record %s", task, record.id)
        for err in errors:
            if not isinstance(err, ChannelError):
                logger.error("Unexpected error dispatching record %s: %r", record.id, err)
        raise errors[0]

    async def _apply_sent(
        self,
        receipts: dict[int, DispatchReceipt],
        now: datetime,
        resend: bool,
        outcome: BatchResult,
    ) -> list[tuple[ConfirmationRecord, state_machine.Transition]]:
        applied: list[tuple[ConfirmationRecord, state_machine.Transition]] = []
        async with self._session_factory() as session:
            fresh = await self._load(session, None, list(receipts))
            for rid, receipt in receipts.items():
                record = fresh.get(rid)
                if record is None:
                    outcome.failed.append(RecordFailure(record_id=rid, error="record not found"))
                    continue
                try:
                    transition = state_machine.mark_sent(record, receipt, now, resend=resend)
                except InvalidTransitionError as exc:
                    outcome.failed.append(
                        RecordFailure(record_id=rid, employee_id=record.employee_id, error=str(exc))
                    )
                    continue
                applied.append((record, transition))
                outcome.succeeded.append(rid)
            await session.commit()
        outcome.succeeded.sort()
        applied.sort(key=lambda item: item[0].id)
        return applied

    # ── Recall ──────────────────────────────────────────────────────
    async def recall(self, record_ids: list[int], actor: str, sheet_id: int | None = None) -> BatchResult:
        outcome = BatchResult(action="recall")
        record_ids = list(dict.fromkeys(record_ids))

        async with self._session_factory() as session:
            records = await self._load(session, sheet_id, record_ids)

        targets: list[ConfirmationRecord] = []
        for rid in record_ids:
            record = records.get(rid)
            if record is None:
                outcome.failed.append(RecordFailure(record_id=rid, error="record not found"))
            elif record.send_status != SENT:
                # nothing to undo
                outcome.succeeded.append(rid)
            else:
                targets.append(record)

        settled = await asyncio.gather(
            *(self._recall_one(record) for record in targets),
            return_exceptions=True,
        )

        to_reset: list[int] = []
        for record, result in zip(targets, settled):
            if isinstance(result, BaseException):
                logger.error("Unexpected error recalling record %s: %r", record.id, result)
                outcome.failed.append(
                    RecordFailure(record_id=record.id, employee_id=record.employee_id, error=str(result))
                )
                continue
            errors = [e for e in result if e is not None]
            attempted = len(result)
            if not errors:
                to_reset.append(record.id)
            elif len(errors) < attempted:
                outcome.partial.append(
                    RecordFailure(record_id=record.id, employee_id=record.employee_id, error="; ".join(errors))
                )
            else:
                outcome.failed.append(
                    RecordFailure(record_id=record.id, employee_id=record.employee_id, error="; ".join(errors))
                )

        recalled: list[tuple[ConfirmationRecord, state_machine.Transition]] = []
        if to_reset:
            async with self._session_factory() as session:
                fresh = await self._load(session, None, to_reset)
                for rid in to_reset:
                    record = fresh.get(rid)
                    if record is None or record.send_status != SENT:
                        outcome.succeeded.append(rid)
                        continue
                    recalled.append((record, state_machine.reset_after_recall(record)))
                    outcome.succeeded.append(rid)
                await session.commit()

        if self._archive is not None:
            for record, _ in recalled:
                self._archive.discard(record.month, record.employee_name)

        outcome.succeeded.sort()
        outcome.partial.sort(key=lambda p: p.record_id)
        outcome.failed.sort(key=lambda f: f.record_id)
        details = {
            "sheet_id": sheet_id,
            "partial": [p.record_id for p in outcome.partial],
            "failed": [f.record_id for f in outcome.failed],
            "summary": outcome.summary,
        }
        self._append_transitions("RECALL", actor, recalled, details)
        logger.info("Recall: %s", outcome.summary)
        return outcome

    async def _recall_one(self, record: ConfirmationRecord) -> list[str | None]:
        """Cancel both sides independently; one error string (or None) per attempt."""
        ops: list[tuple[str, Awaitable]] = []
        if record.todo_task_id:
            ops.append(("delete_task", self._channels.delete_task(record.todo_task_id)))
        if record.corp_task_id:
            ops.append(("recall_message", self._channels.recall_message(record.corp_task_id)))

        results = await asyncio.gather(
            *(self._call(name, coro) for name, coro in ops),
            return_exceptions=True,
        )
        errors: list[str | None] = []
        for (name, _), result in zip(ops, results):
            if isinstance(result, BaseException):
                if not isinstance(result, AttendSheetError):
                    logger.error("Unexpected %s error for record %s: %r", name, record.id, result)
                logger.warning("%s failed for record %s: %s", name, record.id, result)
                errors.append(f"{name}: {result}")
            else:
                errors.append(None)
        return errors
