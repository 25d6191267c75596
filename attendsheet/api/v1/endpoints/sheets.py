"""
Sheet endpoints: create, load, settings, recompute, and the batch actions
(send, recall, archive).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from attendsheet.api.v1.deps import (get_current_active_user, get_services,
                                     require_editor)
from attendsheet.models.confirmation import ConfirmationRecord
from attendsheet.models.sheet import Sheet
from attendsheet.models.user import User
from attendsheet.schemas.common import CountResponse
from attendsheet.schemas.records import BatchRequest, RecordRead
from attendsheet.schemas.results import BatchResult, ReconcileResult
from attendsheet.schemas.sheets import (SheetCreate, SheetRead,
                                        SheetRecordsImport, SheetSettingsUpdate,
                                        SheetSummary)
from attendsheet.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sheets", tags=["sheets"])


def _sheet_read(sheet: Sheet, records: list[ConfirmationRecord], scheduler_status: str) -> SheetRead:
    return SheetRead(
        id=sheet.id,
        company_id=sheet.company_id,
        month=sheet.month,
        title=sheet.title,
        auto_confirm_enabled=sheet.auto_confirm_enabled,
        auto_confirm_at=sheet.auto_confirm_at,
        auto_confirm_fired_for=sheet.auto_confirm_fired_for,
        feedback_contact=sheet.feedback_contact,
        show_columns=sheet.show_columns,
        reminder_text=sheet.reminder_text,
        created_at=sheet.created_at,
        scheduler_status=scheduler_status,
        records=[RecordRead.model_validate(r) for r in records],
    )


async def _target_ids(services: Services, sheet_id: int, body: BatchRequest) -> list[int]:
    if body.record_ids is not None:
        return body.record_ids
    return [r.id for r in await services.sheets.get_records(sheet_id)]


@router.post("", response_model=SheetRead, status_code=201)
async def create_sheet(
    body: SheetCreate,
    services: Services = Depends(get_services),
    editor: User = Depends(require_editor),
) -> SheetRead:
    """Create a sheet from ingested rows; metrics are computed per record."""
    sheet = await services.sheets.create_sheet(
        body.company_id,
        body.month,
        body.employees,
        editor.email,
        title=body.title,
        settings=body.settings,
    )
    records = await services.sheets.get_records(sheet.id)
    return _sheet_read(sheet, records, services.scheduler.status(sheet.id))


@router.get("", response_model=list[SheetSummary])
async def list_sheets(
    company_id: str | None = Query(default=None),
    services: Services = Depends(get_services),
    _user: User = Depends(get_current_active_user),
) -> list[SheetSummary]:
    return [SheetSummary.model_validate(s) for s in await services.sheets.list_sheets(company_id)]


@router.get("/{sheet_id}", response_model=SheetRead)
async def load_sheet(
    sheet_id: int,
    services: Services = Depends(get_services),
    _user: User = Depends(get_current_active_user),
) -> SheetRead:
    """Load a sheet. A due auto-confirm deadline fires here; a near one is armed."""
    sheet, records = await services.sheets.load_sheet(sheet_id)
    return _sheet_read(sheet, records, services.scheduler.status(sheet_id))


@router.patch("/{sheet_id}/settings", response_model=SheetRead)
async def update_settings(
    sheet_id: int,
    body: SheetSettingsUpdate,
    services: Services = Depends(get_services),
    editor: User = Depends(require_editor),
) -> SheetRead:
    sheet = await services.sheets.update_settings(sheet_id, body, editor.email)
    records = await services.sheets.get_records(sheet_id)
    return _sheet_read(sheet, records, services.scheduler.status(sheet_id))


@router.post("/{sheet_id}/records", response_model=CountResponse)
async def import_records(
    sheet_id: int,
    body: SheetRecordsImport,
    services: Services = Depends(get_services),
    editor: User = Depends(require_editor),
) -> CountResponse:
    count = await services.sheets.import_records(sheet_id, body.employees, editor.email)
    return CountResponse(count=count)


@router.post("/{sheet_id}/recompute", response_model=CountResponse)
async def recompute_sheet(
    sheet_id: int,
    services: Services = Depends(get_services),
    editor: User = Depends(require_editor),
) -> CountResponse:
    return CountResponse(count=await services.sheets.recompute_sheet(sheet_id, editor.email))


# ── Batch actions ───────────────────────────────────────────────────
@router.post("/{sheet_id}/send", response_model=BatchResult)
async def send_sheet(
    sheet_id: int,
    body: BatchRequest,
    services: Services = Depends(get_services),
    editor: User = Depends(require_editor),
) -> BatchResult:
    """Notify employees on both channels. Already-sent records need ``resend``."""
    record_ids = await _target_ids(services, sheet_id, body)
    return await services.dispatcher.send(sheet_id, record_ids, editor.email, resend=body.resend)


@router.post("/{sheet_id}/recall", response_model=BatchResult)
async def recall_sheet(
    sheet_id: int,
    body: BatchRequest,
    services: Services = Depends(get_services),
    editor: User = Depends(require_editor),
) -> BatchResult:
    record_ids = await _target_ids(services, sheet_id, body)
    return await services.dispatcher.recall(record_ids, editor.email, sheet_id=sheet_id)


@router.post("/{sheet_id}/archive", response_model=ReconcileResult)
async def archive_sheet(
    sheet_id: int,
    services: Services = Depends(get_services),
    editor: User = Depends(require_editor),
) -> ReconcileResult:
    """Upload archives for signed records missing from the store; waits for the batch."""
    future = await services.archive.reconcile(sheet_id, editor.email)
    return await future


@router.post("/{sheet_id}/auto-confirm", response_model=CountResponse)
async def trigger_auto_confirm(
    sheet_id: int,
    services: Services = Depends(get_services),
    editor: User = Depends(require_editor),
) -> CountResponse:
    """Fire the sheet's auto-confirm now. A second trigger is a no-op."""
    logger.info("Manual auto-confirm for sheet %s by %s", sheet_id, editor.email)
    return CountResponse(count=await services.scheduler.fire(sheet_id))
