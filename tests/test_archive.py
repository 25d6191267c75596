"""
Tests for archive rendering and the serial reconcile queue.
"""

import pytest

from attendsheet.core.exceptions import SheetNotFoundError
from attendsheet.services.archive import (archive_key, archive_lines,
                                          render_archive_png)

PREFIX = "attendance/signatures/2024-05/"


async def _signed_sheet(services, make_sheet):
    sheet, _ = await make_sheet()
    await services.scheduler.fire(sheet.id)
    return sheet, await services.sheets.get_records(sheet.id)


async def _archive_entries(services):
    await services.audit.drain()
    return await services.audit.list_entries(action="ARCHIVE")


class TestRendering:
    def test_key_layout(self):
        assert archive_key("attendance/signatures/", "2024-05", "张伟") == (
            "attendance/signatures/2024-05/张伟-2024-05.png"
        )

    async def test_png_and_lines(self, services, make_sheet):
        sheet, records = await _signed_sheet(services, make_sheet)
        record = records[0]

        lines = archive_lines(record, sheet.title)
        assert lines[0] == sheet.title
        assert any("确认方式: auto" in line for line in lines)
        assert lines[-1] == record.signature

        data = render_archive_png(record, sheet.title)
        assert data[:8] == b"\x89PNG\r\n\x1a\n"

    async def test_missing_font_falls_back(self, services, make_sheet):
        sheet, records = await _signed_sheet(services, make_sheet)
        data = render_archive_png(records[0], sheet.title, font_path="/nonexistent/font.ttf")
        assert data.startswith(b"\x89PNG")


class TestReconcile:
    async def test_uploads_every_signed_record_serially(self, services, archive_store, make_sheet):
        sheet, records = await _signed_sheet(services, make_sheet)

        result = await (await services.archive.reconcile(sheet.id, "hr@example.com"))

        assert (result.signed, result.queued, result.uploaded) == (3, 3, 3)
        assert result.failed == []
        assert archive_store.max_active == 1
        assert sorted(archive_store.objects) == sorted(
            f"{PREFIX}{r.employee_name}-2024-05.png" for r in records
        )
        assert all(v.startswith(b"\x89PNG") for v in archive_store.objects.values())

        entries = await _archive_entries(services)
        assert len(entries) == 1
        assert entries[0].target == f"sheet:{sheet.id}"
        assert entries[0].details["uploaded"] == 3

    async def test_converges(self, services, archive_store, make_sheet):
        sheet, _ = await _signed_sheet(services, make_sheet)
        await (await services.archive.reconcile(sheet.id, "hr@example.com"))
        uploads = len(archive_store.uploads)

        again = await (await services.archive.reconcile(sheet.id, "hr@example.com"))

        assert again.queued == 0
        assert again.uploaded == 0
        assert len(archive_store.uploads) == uploads
        assert len(await _archive_entries(services)) == 1

    async def test_only_missing_are_queued(self, services, archive_store, make_sheet):
        sheet, records = await _signed_sheet(services, make_sheet)
        existing = f"{PREFIX}{records[0].employee_name}-2024-05.png"
        archive_store.objects[existing] = b"old"

        result = await (await services.archive.reconcile(sheet.id, "hr@example.com"))

        assert result.queued == 2
        assert archive_store.objects[existing] == b"old"

    async def test_listing_failure_archives_everything(self, services, archive_store, make_sheet):
        sheet, _ = await _signed_sheet(services, make_sheet)
        archive_store.fail_list = True

        result = await (await services.archive.reconcile(sheet.id, "hr@example.com"))

        assert result.listing_failed is True
        assert result.queued == 3
        assert result.uploaded == 3

    async def test_item_failure_does_not_stop_queue(self, services, archive_store, make_sheet):
        sheet, records = await _signed_sheet(services, make_sheet)
        bad = records[1]
        archive_store.fail_upload.add(f"{PREFIX}{bad.employee_name}-2024-05.png")

        result = await (await services.archive.reconcile(sheet.id, "hr@example.com"))

        assert result.uploaded == 2
        assert [f.record_id for f in result.failed] == [bad.id]
        entries = await _archive_entries(services)
        assert entries[0].details["failed"] == [bad.id]

        # a later pass only retries the failed one
        archive_store.fail_upload.clear()
        retry = await (await services.archive.reconcile(sheet.id, "hr@example.com"))
        assert retry.queued == 1
        assert retry.uploaded == 1

    async def test_unexpected_upload_error_is_counted(self, services, archive_store, make_sheet):
        sheet, records = await _signed_sheet(services, make_sheet)
        bad = records[0]
        archive_store.crash_upload.add(f"{PREFIX}{bad.employee_name}-2024-05.png")

        result = await (await services.archive.reconcile(sheet.id, "hr@example.com"))

        assert result.uploaded == 2
        assert [f.record_id for f in result.failed] == [bad.id]
        assert "RuntimeError" in result.failed[0].error
        assert result.uploaded + len(result.failed) == result.queued
        entries = await _archive_entries(services)
        assert entries[0].details["failed"] == [bad.id]

    async def test_unsigned_records_are_skipped(self, services, archive_store, make_sheet):
        sheet, _ = await make_sheet()
        result = await (await services.archive.reconcile(sheet.id, "hr@example.com"))
        assert (result.signed, result.queued) == (0, 0)
        assert archive_store.uploads == []

    async def test_completion_callback(self, services, make_sheet):
        sheet, _ = await _signed_sheet(services, make_sheet)
        seen = []

        future = await services.archive.reconcile(sheet.id, "hr@example.com", on_complete=seen.append)
        result = await future

        assert seen == [result]

    async def test_unknown_sheet(self, services):
        with pytest.raises(SheetNotFoundError):
            await services.archive.reconcile(404, "hr@example.com")
