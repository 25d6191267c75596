"""
Rule set value model.

Every field has a default so a partially stored configuration still
evaluates: exemption off, no penalty cap, the standard ladder and no
cross-day late thresholds.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from attendsheet.engine.tokens import LeaveType

DEFAULT_BREAKING_LEAVE_TYPES = [
    LeaveType.ANNUAL,
    LeaveType.SICK,
    LeaveType.PERSONAL,
    LeaveType.BEREAVEMENT,
    LeaveType.PATERNITY,
    LeaveType.MATERNITY,
    LeaveType.PARENTAL,
    LeaveType.MARRIAGE,
]


class PenaltyTier(BaseModel):
    min: float
    max: float | None = None  # None = open ended
    amount: float


def _default_tiers() -> list[PenaltyTier]:
    return [
        PenaltyTier(min=0, max=5, amount=50),
        PenaltyTier(min=5, max=15, amount=100),
        PenaltyTier(min=15, max=30, amount=150),
        PenaltyTier(min=30, max=45, amount=200),
        PenaltyTier(min=45, max=None, amount=250),
    ]


class LateExemptionRules(BaseModel):
    enabled: bool = False
    exempt_count: int = 3
    exempt_minutes_threshold: float = 15


class PenaltyRules(BaseModel):
    enabled: bool = True
    calc: Literal["ladder", "per_minute", "fixed"] = "ladder"
    tiers: list[PenaltyTier] = Field(default_factory=_default_tiers)
    per_minute_rate: float = 0
    fixed_amount: float = 0
    mode: Literal["unlimited", "capped"] = "unlimited"
    max_penalty: float = 0


class FullAttendanceRules(BaseModel):
    enabled: bool = True
    bonus_amount: float = 200
    breaking_leave_types: list[LeaveType] = Field(
        default_factory=lambda: list(DEFAULT_BREAKING_LEAVE_TYPES)
    )


class LeaveDisplayRule(BaseModel):
    leave_type: LeaveType
    threshold_hours: float
    short_label: str
    long_label: str


class LateRule(BaseModel):
    """Late threshold for a day whose previous-day checkout was at or after ``previous_day_checkout``."""

    previous_day_checkout: str
    late_threshold: str


class AttendanceDaysRules(BaseModel):
    enabled: bool = True
    method: Literal["workdays", "fixed"] = "workdays"
    fixed_days: int | None = None


def _default_leave_display() -> list[LeaveDisplayRule]:
    return [
        LeaveDisplayRule(
            leave_type=LeaveType.SICK,
            threshold_hours=24,
            short_label="病假<=24小时",
            long_label="病假>24小时",
        )
    ]


class RuleSet(BaseModel):
    late_exemption: LateExemptionRules = Field(default_factory=LateExemptionRules)
    penalty: PenaltyRules = Field(default_factory=PenaltyRules)
    full_attendance: FullAttendanceRules = Field(default_factory=FullAttendanceRules)
    overtime_checkpoints: list[str] = Field(
        default_factory=lambda: ["19:30", "20:30", "22:00", "24:00"]
    )
    leave_display: list[LeaveDisplayRule] = Field(default_factory=_default_leave_display)
    standard_day_hours: float = 8
    work_start: str = "09:00"
    late_rules: list[LateRule] = Field(default_factory=list)
    attendance_days: AttendanceDaysRules = Field(default_factory=AttendanceDaysRules)

    model_config = {"extra": "ignore"}


# ── API DTOs ────────────────────────────────────────────────────────
class RuleConfigRead(BaseModel):
    company_id: str
    version: int
    rules: RuleSet
    updated_by: str | None = None
    updated_at: datetime | None = None


class RuleConfigUpdate(BaseModel):
    rules: RuleSet
    reason: str | None = None


class RuleSnapshotRead(BaseModel):
    company_id: str
    version: int
    change_type: str
    reason: str | None
    created_by: str | None
    created_at: datetime | None
    payload: RuleSet

    model_config = {"from_attributes": True}


class RollbackRequest(BaseModel):
    reason: str | None = None
