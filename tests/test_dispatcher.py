"""
Tests for batch send / recall over the two notification channels.
"""

from datetime import datetime, timezone

import pytest

from attendsheet.core.exceptions import SheetNotFoundError
from attendsheet.models.confirmation import ConfirmationRecord
from attendsheet.models.sheet import Sheet
from attendsheet.services.directory import ChannelIdentity, StaticDirectory
from attendsheet.services.dispatcher import (RESEND_REQUIRED,
                                             NotificationDispatcher,
                                             build_message_payload,
                                             build_task_payload)


async def _audit(services, action):
    await services.audit.drain()
    return await services.audit.list_entries(action=action)


class TestPayloads:
    def test_message_and_task_payloads(self):
        sheet = Sheet(
            id=1,
            company_id="acme",
            month="2024-05",
            title="五月考勤",
            auto_confirm_at=datetime(2024, 6, 5, 10, 0, tzinfo=timezone.utc),
        )
        record = ConfirmationRecord(
            employee_id="u1",
            employee_name="张伟",
            month="2024-05",
            daily_data={"1": "√"},
            metrics={"attended_days": 21, "is_full_attendance": True, "exempted_late_minutes": 0},
        )
        msg = build_message_payload(record, sheet, "https://h5/u1/2024-05")
        assert msg["oa"]["message_url"] == "https://h5/u1/2024-05"
        assert msg["oa"]["head"]["text"] == "2024-05考勤确认单"
        assert msg["oa"]["body"]["form"][0]["value"] == "21"

        now = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)
        task = build_task_payload(record, sheet, "https://h5/u1/2024-05", now)
        assert task["subject"] == "五月考勤"
        assert task["dueTime"] == int(sheet.auto_confirm_at.timestamp() * 1000)
        assert task["reminderTimeStamp"] == task["dueTime"] - 3_600_000

    def test_task_due_defaults_to_evening(self):
        sheet = Sheet(id=1, company_id="acme", month="2024-05", title="t", auto_confirm_at=None)
        record = ConfirmationRecord(employee_id="u1", month="2024-05", metrics={})
        now = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)
        task = build_task_payload(record, sheet, "x", now)
        due = datetime(2024, 6, 1, 18, 30, tzinfo=timezone.utc)
        assert task["dueTime"] == int(due.timestamp() * 1000)


class TestSend:
    async def test_partial_batch(self, services, channels, make_sheet, sample_rows, reload_record):
        """Task creation fails for the second record: 1 sent, 1 failed, 1 audit entry for the sent one."""
        sheet, records = await make_sheet(rows=sample_rows[:2])
        first, second = records
        channels.fail_create_task.add(second.employee_id)

        result = await services.dispatcher.send(sheet.id, [first.id, second.id], "hr@example.com")

        assert result.succeeded == [first.id]
        assert [f.record_id for f in result.failed] == [second.id]
        assert "rejected" in result.failed[0].error
        assert result.summary == "1 succeeded, 1 failed"

        sent = await reload_record(first.id)
        assert sent.send_status == "sent"
        assert sent.corp_task_id.startswith("msg-")
        assert sent.todo_task_id.startswith("todo-")

        unsent = await reload_record(second.id)
        assert unsent.send_status == "pending"
        assert unsent.corp_task_id is None
        assert unsent.todo_task_id is None

        entries = await _audit(services, "SEND")
        assert len(entries) == 1
        assert entries[0].target == f"record:{first.id}"
        assert entries[0].before["send_status"] == "pending"
        assert entries[0].after["send_status"] == "sent"
        assert entries[0].details["failed"] == [second.id]
        assert entries[0].details["summary"] == "1 succeeded, 1 failed"

    async def test_each_sent_record_is_audited(self, services, make_sheet):
        sheet, records = await make_sheet()

        await services.dispatcher.send(sheet.id, [r.id for r in records], "hr@example.com")

        entries = await _audit(services, "SEND")
        assert sorted(e.target for e in entries) == sorted(f"record:{r.id}" for r in records)
        assert all(e.actor == "hr@example.com" for e in entries)
        assert all(e.before["send_status"] == "pending" for e in entries)
        assert all(e.after["send_status"] == "sent" for e in entries)
        assert all(e.after["corp_task_id"].startswith("msg-") for e in entries)

    async def test_already_sent_requires_resend(self, services, make_sheet, reload_record):
        sheet, records = await make_sheet()
        rid = records[0].id
        await services.dispatcher.send(sheet.id, [rid], "hr@example.com")
        original = (await reload_record(rid)).corp_task_id

        again = await services.dispatcher.send(sheet.id, [rid], "hr@example.com")
        assert again.succeeded == []
        assert again.failed[0].error == RESEND_REQUIRED

        resent = await services.dispatcher.send(sheet.id, [rid], "hr@example.com", resend=True)
        assert resent.succeeded == [rid]
        assert (await reload_record(rid)).corp_task_id != original

        assert len(await _audit(services, "SEND")) == 2

    async def test_resend_clears_modified_flag(self, services, make_sheet, reload_record):
        sheet, records = await make_sheet()
        rid = records[0].id
        await services.dispatcher.send(sheet.id, [rid], "hr@example.com")
        await services.sheets.update_daily_data(rid, {"4": "旷工"}, "hr@example.com")
        assert (await reload_record(rid)).is_modified_after_sent is True

        await services.dispatcher.send(sheet.id, [rid], "hr@example.com", resend=True)
        assert (await reload_record(rid)).is_modified_after_sent is False

    async def test_unknown_record_and_directory_miss(self, services, channels, make_sheet, session_factory):
        sheet, records = await make_sheet()
        known = records[0]
        directory = StaticDirectory({known.employee_id: ChannelIdentity("user-a", "union-a")})
        dispatcher = NotificationDispatcher(
            session_factory, channels, directory, services.audit, clock=services.clock
        )

        result = await dispatcher.send(sheet.id, [known.id, records[1].id, 9999], "hr@example.com")

        assert result.succeeded == [known.id]
        errors = {f.record_id: f.error for f in result.failed}
        assert errors[records[1].id] == "employee not found in directory"
        assert errors[9999] == "record not found"
        assert set(channels.messages.values()) == {"user-a"}
        assert set(channels.tasks.values()) == {"union-a"}

    async def test_hung_channel_times_out(
        self, services, channels, make_sheet, sample_rows, session_factory, reload_record
    ):
        sheet, records = await make_sheet(rows=sample_rows[:2])
        channels.hang_create_task.add(records[1].employee_id)
        dispatcher = NotificationDispatcher(
            session_factory,
            channels,
            StaticDirectory(
                {r.employee_id: ChannelIdentity(r.employee_id, r.employee_id) for r in records}
            ),
            services.audit,
            clock=services.clock,
            timeout=0.05,
        )

        result = await dispatcher.send(sheet.id, [r.id for r in records], "hr@example.com")

        assert result.succeeded == [records[0].id]
        assert "timed out" in result.failed[0].error
        assert (await reload_record(records[1].id)).send_status == "pending"

    async def test_missing_sheet(self, services):
        with pytest.raises(SheetNotFoundError):
            await services.dispatcher.send(404, [1], "hr@example.com")

    async def test_nothing_sent_writes_no_audit(self, services, channels, make_sheet):
        sheet, records = await make_sheet()
        channels.fail_send_message.update(r.employee_id for r in records)
        result = await services.dispatcher.send(sheet.id, [r.id for r in records], "hr@example.com")
        assert result.succeeded == []
        assert await _audit(services, "SEND") == []


class TestRecall:
    async def _sent_sheet(self, services, make_sheet, reload_record):
        sheet, records = await make_sheet()
        await services.dispatcher.send(sheet.id, [r.id for r in records], "hr@example.com")
        return sheet, [await reload_record(r.id) for r in records]

    async def test_recall_resets_record(self, services, channels, archive_store, make_sheet, reload_record):
        sheet, records = await self._sent_sheet(services, make_sheet, reload_record)
        target = records[0]
        await services.sheets.confirm(target.id, "sig", "u1001")

        result = await services.dispatcher.recall([target.id], "hr@example.com", sheet_id=sheet.id)

        assert result.succeeded == [target.id]
        reset = await reload_record(target.id)
        assert (reset.send_status, reset.view_status, reset.confirm_status) == (
            "pending",
            "pending",
            "pending",
        )
        assert reset.corp_task_id is None
        assert reset.signature is None
        assert target.corp_task_id in channels.recalled
        assert target.todo_task_id in channels.deleted

        entries = await _audit(services, "RECALL")
        assert [e.target for e in entries] == [f"record:{target.id}"]
        assert entries[0].before["confirm_status"] == "confirmed"
        assert entries[0].after["send_status"] == "pending"
        assert entries[0].after["signature"] is None

        await services.archive.drain()
        assert archive_store.deleted == [f"attendance/signatures/2024-05/{target.employee_name}-2024-05.png"]

    async def test_partial_failure_leaves_flags(self, services, channels, make_sheet, reload_record):
        """Message already read: recall fails, task delete succeeds; record stays sent."""
        sheet, records = await self._sent_sheet(services, make_sheet, reload_record)
        target = records[0]
        channels.fail_recall_message.add(target.corp_task_id)

        result = await services.dispatcher.recall([target.id], "hr@example.com", sheet_id=sheet.id)

        assert result.succeeded == []
        assert [p.record_id for p in result.partial] == [target.id]
        assert "recall_message" in result.partial[0].error
        assert target.todo_task_id in channels.deleted

        after = await reload_record(target.id)
        assert after.lifecycle_snapshot() == target.lifecycle_snapshot()

        # no transition was applied, so nothing is audited
        assert await _audit(services, "RECALL") == []

    async def test_total_failure(self, services, channels, make_sheet, reload_record):
        sheet, records = await self._sent_sheet(services, make_sheet, reload_record)
        target = records[0]
        channels.fail_recall_message.add(target.corp_task_id)
        channels.fail_delete_task.add(target.todo_task_id)

        result = await services.dispatcher.recall([target.id], "hr@example.com")

        assert [f.record_id for f in result.failed] == [target.id]
        assert (await reload_record(target.id)).send_status == "sent"

    async def test_recall_is_idempotent(self, services, channels, make_sheet, reload_record):
        sheet, records = await self._sent_sheet(services, make_sheet, reload_record)
        ids = [r.id for r in records]

        first = await services.dispatcher.recall(ids, "hr@example.com", sheet_id=sheet.id)
        calls = len(channels.recalled)
        second = await services.dispatcher.recall(ids, "hr@example.com", sheet_id=sheet.id)

        assert first.succeeded == sorted(ids)
        assert second.succeeded == sorted(ids)
        assert second.failed == [] and second.partial == []
        assert len(channels.recalled) == calls
        # the no-op second pass writes nothing
        assert len(await _audit(services, "RECALL")) == len(ids)

    async def test_unknown_record(self, services):
        result = await services.dispatcher.recall([12345], "hr@example.com")
        assert result.failed[0].error == "record not found"
