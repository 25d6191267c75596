"""Pydantic schemas for sheets and their settings."""

from __future__ import annotations

import re
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from attendsheet.schemas.records import RecordRead

_MONTH = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


class EmployeeRow(BaseModel):
    """One ingested employee-month: identity plus raw day tokens."""

    employee_id: str
    employee_name: str
    department: str | None = None
    daily_data: dict[str, str] = Field(default_factory=dict)

    @field_validator("employee_id", "employee_name")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class SheetSettings(BaseModel):
    auto_confirm_enabled: bool = False
    auto_confirm_at: datetime | None = None
    feedback_contact: str | None = None
    show_columns: list[str] | None = None
    reminder_text: str | None = None


class SheetSettingsUpdate(BaseModel):
    auto_confirm_enabled: bool | None = None
    auto_confirm_at: datetime | None = None
    feedback_contact: str | None = None
    show_columns: list[str] | None = None
    reminder_text: str | None = None


class SheetCreate(BaseModel):
    company_id: str
    month: str
    title: str | None = None
    settings: SheetSettings = Field(default_factory=SheetSettings)
    employees: list[EmployeeRow] = Field(default_factory=list)

    @field_validator("month")
    @classmethod
    def _validate_month(cls, v: str) -> str:
        v = v.strip()
        if not _MONTH.match(v):
            raise ValueError("month must be YYYY-MM")
        return v


class SheetRecordsImport(BaseModel):
    employees: list[EmployeeRow]


class SheetSummary(BaseModel):
    id: int
    company_id: str
    month: str
    title: str
    auto_confirm_enabled: bool
    auto_confirm_at: datetime | None
    created_at: datetime | None

    model_config = {"from_attributes": True}


class SheetRead(SheetSummary):
    auto_confirm_fired_for: datetime | None = None
    feedback_contact: str | None = None
    show_columns: list[str] | None = None
    reminder_text: str | None = None
    scheduler_status: str = "idle"
    records: list[RecordRead] = Field(default_factory=list)
