"""Pydantic schemas for confirmation records and lifecycle requests."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class RecordRead(BaseModel):
    id: int
    sheet_id: int
    company_id: str
    month: str
    employee_id: str
    employee_name: str
    department: str | None
    daily_data: dict
    metrics: dict
    send_status: str
    view_status: str
    confirm_status: str
    sent_at: datetime | None
    viewed_at: datetime | None
    confirmed_at: datetime | None
    confirm_type: str | None
    signature: str | None
    corp_task_id: str | None
    todo_task_id: str | None
    is_modified_after_sent: bool

    model_config = {"from_attributes": True}


class DailyDataPatch(BaseModel):
    # a None value clears that day
    daily_data: dict[str, str | None]
    replace: bool = False
    reason: str | None = None


class ConfirmRequest(BaseModel):
    signature: str = Field(min_length=1)


class BatchRequest(BaseModel):
    # None addresses every record on the sheet
    record_ids: list[int] | None = None
    resend: bool = False
