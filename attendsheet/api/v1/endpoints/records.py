"""
Confirmation record endpoints: raw-fact edits and the employee view / confirm events.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from attendsheet.api.v1.deps import (get_current_active_user, get_services,
                                     require_editor)
from attendsheet.models.user import User
from attendsheet.schemas.records import ConfirmRequest, DailyDataPatch, RecordRead
from attendsheet.services.container import Services

router = APIRouter(prefix="/records", tags=["records"])


@router.patch("/{record_id}/daily", response_model=RecordRead)
async def update_daily_data(
    record_id: int,
    body: DailyDataPatch,
    services: Services = Depends(get_services),
    editor: User = Depends(require_editor),
) -> RecordRead:
    """Edit day tokens and recompute metrics. Sent records are flagged as modified."""
    record = await services.sheets.update_daily_data(
        record_id,
        body.daily_data,
        editor.email,
        reason=body.reason,
        replace=body.replace,
    )
    return RecordRead.model_validate(record)


@router.post("/{record_id}/view", response_model=RecordRead)
async def mark_viewed(
    record_id: int,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_active_user),
) -> RecordRead:
    record = await services.sheets.mark_viewed(record_id, user.email)
    return RecordRead.model_validate(record)


@router.post("/{record_id}/confirm", response_model=RecordRead)
async def confirm_record(
    record_id: int,
    body: ConfirmRequest,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_active_user),
) -> RecordRead:
    record = await services.sheets.confirm(record_id, body.signature, user.email)
    return RecordRead.model_validate(record)
