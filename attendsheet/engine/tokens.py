"""
Daily status tokens.

A day slot in ``daily_data`` is free text such as ``"√"``, ``"迟到12分钟"``,
``"病假4小时, 加班21:45"``. ``parse_day`` turns one slot into a list of typed
tokens; anything unrecognised becomes ``Custom`` and never affects metrics.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Union


class LeaveType(str, enum.Enum):
    ANNUAL = "annual"
    SICK = "sick"
    PERSONAL = "personal"
    COMP_TIME = "comp_time"
    TRIP = "trip"
    BEREAVEMENT = "bereavement"
    PATERNITY = "paternity"
    MATERNITY = "maternity"
    PARENTAL = "parental"
    MARRIAGE = "marriage"


# Longest labels first so 陪产假 wins over 产假.
LEAVE_LABELS: dict[str, LeaveType] = {
    "陪产假": LeaveType.PATERNITY,
    "育儿假": LeaveType.PARENTAL,
    "年假": LeaveType.ANNUAL,
    "病假": LeaveType.SICK,
    "事假": LeaveType.PERSONAL,
    "调休": LeaveType.COMP_TIME,
    "出差": LeaveType.TRIP,
    "外出": LeaveType.TRIP,
    "丧假": LeaveType.BEREAVEMENT,
    "产假": LeaveType.MATERNITY,
    "婚假": LeaveType.MARRIAGE,
}

LEAVE_DISPLAY_NAMES: dict[LeaveType, str] = {
    LeaveType.ANNUAL: "年假",
    LeaveType.SICK: "病假",
    LeaveType.PERSONAL: "事假",
    LeaveType.COMP_TIME: "调休",
    LeaveType.TRIP: "出差",
    LeaveType.BEREAVEMENT: "丧假",
    LeaveType.PATERNITY: "陪产假",
    LeaveType.MATERNITY: "产假",
    LeaveType.PARENTAL: "育儿假",
    LeaveType.MARRIAGE: "婚假",
}

PRESENT_MARKS = {"√", "✓", "正常"}

# Overtime ending before this hour is taken to be after midnight.
OVERNIGHT_CUTOFF_MINUTES = 6 * 60


# ── Token types ─────────────────────────────────────────────────────
@dataclass(frozen=True)
class Present:
    pass


@dataclass(frozen=True)
class Late:
    minutes: float


@dataclass(frozen=True)
class Missing:
    count: int = 1


@dataclass(frozen=True)
class Absent:
    pass


@dataclass(frozen=True)
class Leave:
    leave_type: LeaveType
    hours: float | None = None
    days: float | None = None


@dataclass(frozen=True)
class Overtime:
    # minutes after midnight of the work day; may exceed 1440
    end_minute: int | None
    # declared duration for "加班3小时" style entries
    hours: float | None = None


@dataclass(frozen=True)
class Custom:
    text: str


Token = Union[Present, Late, Missing, Absent, Leave, Overtime, Custom]


# ── Parsing ─────────────────────────────────────────────────────────
_SEPARATORS = re.compile(r"[,，;；、|\n]")
_NUMBER = r"(\d+(?:\.\d+)?)"
_LATE = re.compile(rf"^迟到\s*(?:{_NUMBER}\s*(?:分钟|分|min|m)?)?$", re.IGNORECASE)
_MISSING = re.compile(r"^缺卡\s*(?:(\d+)\s*次)?$")
_ABSENT = re.compile(r"^旷工")
_OVERTIME = re.compile(r"^加班\s*(?:[至到~-]\s*)?(?:(\d{1,2})\s*[:：]\s*(\d{2}))?\s*$")
_OVERTIME_HOURS = re.compile(rf"^加班\s*{_NUMBER}\s*(?:小时|h)\s*$", re.IGNORECASE)
_AMOUNT = re.compile(rf"^\s*{_NUMBER}\s*(小时|h|H|天|d|D)?\s*$")


def parse_clock(value: str) -> int:
    """``"HH:MM"`` (``24:00`` allowed) to minutes after midnight."""
    match = re.fullmatch(r"\s*(\d{1,2})\s*[:：]\s*(\d{2})\s*", value)
    if not match:
        raise ValueError(f"Not a HH:MM time: {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if minute >= 60 or hour > 24 or (hour == 24 and minute > 0):
        raise ValueError(f"Time out of range: {value!r}")
    return hour * 60 + minute


def _parse_overtime_end(hour: str | None, minute: str | None) -> int | None:
    if hour is None or minute is None:
        return None
    total = int(hour) * 60 + int(minute)
    if total < OVERNIGHT_CUTOFF_MINUTES:
        total += 24 * 60
    return total


def _parse_leave(text: str) -> Leave | None:
    for label, leave_type in LEAVE_LABELS.items():
        if not text.startswith(label):
            continue
        rest = text[len(label):]
        if not rest.strip():
            return Leave(leave_type)
        amount = _AMOUNT.match(rest)
        if amount is None:
            return None
        value = float(amount.group(1))
        unit = (amount.group(2) or "小时").lower()
        if unit in ("天", "d"):
            return Leave(leave_type, days=value)
        return Leave(leave_type, hours=value)
    return None


def parse_token(text: str) -> Token:
    text = text.strip()
    if text in PRESENT_MARKS:
        return Present()

    match = _LATE.match(text)
    if match:
        return Late(float(match.group(1)) if match.group(1) else 0.0)

    match = _MISSING.match(text)
    if match:
        return Missing(int(match.group(1)) if match.group(1) else 1)

    if _ABSENT.match(text):
        return Absent()

    match = _OVERTIME.match(text)
    if match:
        return Overtime(_parse_overtime_end(match.group(1), match.group(2)))

    match = _OVERTIME_HOURS.match(text)
    if match:
        return Overtime(None, hours=float(match.group(1)))

    leave = _parse_leave(text)
    if leave is not None:
        return leave

    return Custom(text)


def parse_day(raw: object) -> list[Token]:
    """Split one day slot into tokens, preserving order of appearance."""
    if raw is None:
        return []
    text = str(raw).strip()
    if not text:
        return []
    return [parse_token(part) for part in _SEPARATORS.split(text) if part.strip()]


def day_keys(daily_data: dict) -> list[tuple[int, str]]:
    """Calendar-day keys ("1".."31") in ascending order; other keys are skipped."""
    days: list[tuple[int, str]] = []
    for key in daily_data:
        key_str = str(key).strip()
        if key_str.isdigit() and 1 <= int(key_str) <= 31:
            days.append((int(key_str), key))
    days.sort(key=lambda item: item[0])
    return days
