"""
Monthly metrics computation.

``compute_metrics`` is pure and synchronous: the same ``daily_data`` and rule
set always produce the same ``MonthlyMetrics``. It runs on every raw-fact
edit, so it does no I/O.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from attendsheet.engine.tokens import (Absent, Late, Leave, Missing, Overtime,
                                       Present, day_keys, parse_clock,
                                       parse_day)
from attendsheet.schemas.rules import PenaltyRules, RuleSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LateEvent:
    day: int
    position: int
    minutes: float


@dataclass
class OvertimeBucket:
    minutes: float = 0
    count: int = 0


@dataclass
class MonthlyMetrics:
    late_count: int = 0
    late_minutes: float = 0
    exempted_late_minutes: float = 0
    exempted_late_count: int = 0
    missing_count: int = 0
    absenteeism_count: int = 0
    leave_hours: dict[str, float] = field(default_factory=dict)
    leave_display: dict[str, str] = field(default_factory=dict)
    overtime: dict[str, OvertimeBucket] = field(default_factory=dict)
    overtime_total_minutes: float = 0
    overtime_declared_hours: float = 0
    attended_days: int = 0
    should_attend_days: int | None = None
    is_full_attendance: bool = False
    full_attendance_bonus: float = 0
    performance_penalty: float = 0
    rule_version: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Pieces ──────────────────────────────────────────────────────────
def forgiven_late_events(
    events: list[LateEvent], exempt_count: int, threshold: float
) -> list[LateEvent]:
    """Late events forgiven by the exemption window.

    Events are ordered by (day, position) with a stable sort, then the first
    ``exempt_count`` are examined and those no longer than ``threshold`` are
    forgiven. Longer events inside the window still use up a slot.
    """
    ordered = sorted(events, key=lambda e: (e.day, e.position))
    window = ordered[: max(exempt_count, 0)]
    return [e for e in window if e.minutes <= threshold]


def compute_penalty(minutes: float, rules: PenaltyRules) -> float:
    """Penalty for a post-exemption late total."""
    if not rules.enabled or minutes <= 0:
        return 0.0

    if rules.calc == "per_minute":
        amount = minutes * rules.per_minute_rate
    elif rules.calc == "fixed":
        amount = rules.fixed_amount
    else:
        amount = _ladder_amount(minutes, rules)

    if rules.mode == "capped":
        amount = min(amount, rules.max_penalty)
    return round(float(amount), 2)


def _ladder_amount(minutes: float, rules: PenaltyRules) -> float:
    tiers = sorted(rules.tiers, key=lambda t: t.min)
    if not tiers:
        return 0.0
    for tier in tiers:
        if tier.min <= minutes and (tier.max is None or minutes < tier.max):
            return tier.amount
    # past the last closed tier: the final tier is open ended
    if minutes >= tiers[-1].min:
        return tiers[-1].amount
    return 0.0


def _checkpoints(rules: RuleSet) -> list[tuple[str, int]]:
    parsed: list[tuple[str, int]] = []
    for label in rules.overtime_checkpoints:
        try:
            parsed.append((label, parse_clock(label)))
        except ValueError:
            logger.warning("Skipping unparsable overtime checkpoint %r", label)
    parsed.sort(key=lambda item: item[1])
    return parsed


def _attribute_overtime(end_minute: int, checkpoints: list[tuple[str, int]]) -> tuple[str, int] | None:
    """Latest checkpoint the session cleared, with minutes past it."""
    cleared = None
    for label, threshold in checkpoints:
        if end_minute > threshold:
            cleared = (label, end_minute - threshold)
    return cleared


def _late_rules(rules: RuleSet) -> tuple[int, list[tuple[int, int]]]:
    """Work start and (previous-day checkout, late threshold) pairs, ascending by checkout."""
    work_start = parse_clock(rules.work_start)
    parsed: list[tuple[int, int]] = []
    for rule in rules.late_rules:
        try:
            parsed.append((parse_clock(rule.previous_day_checkout), parse_clock(rule.late_threshold)))
        except ValueError:
            logger.warning("Skipping unparsable late rule %r", rule)
    parsed.sort()
    return work_start, parsed


def shift_late_minutes(
    minutes: float,
    previous_checkout: int | None,
    work_start: int,
    late_rules: list[tuple[int, int]],
) -> float | None:
    """Late minutes measured from the threshold the previous day's checkout earned.

    ``minutes`` counts from ``work_start``. The latest rule whose checkout time
    was reached applies. Returns ``None`` when no rule applies.
    """
    if previous_checkout is None:
        return None
    threshold = None
    for checkout, limit in late_rules:
        if previous_checkout >= checkout:
            threshold = limit
    if threshold is None:
        return None
    return max(0.0, minutes - (threshold - work_start))


def should_attend_days(month: str | None, rules: RuleSet) -> int | None:
    """Expected working days: a fixed count, or the month's Monday-Friday days."""
    days = rules.attendance_days
    if not days.enabled:
        return None
    if days.method == "fixed":
        return days.fixed_days
    if not month:
        return None
    try:
        year, mon = (int(part) for part in month.split("-"))
        _, length = calendar.monthrange(year, mon)
    except ValueError:
        logger.warning("Cannot count workdays for month %r", month)
        return None
    return sum(1 for d in range(1, length + 1) if calendar.weekday(year, mon, d) < 5)


def _display_label(hours: float, threshold: float, short: str, long: str) -> str:
    label = short if hours <= threshold else long
    return f"{label} {hours:g}小时"


# ── Entry point ─────────────────────────────────────────────────────
def compute_metrics(
    daily_data: dict | None,
    rules: RuleSet | dict | None = None,
    rule_version: int | None = None,
    month: str | None = None,
) -> MonthlyMetrics:
    if rules is None:
        rules = RuleSet()
    elif isinstance(rules, dict):
        rules = RuleSet.model_validate(rules)

    metrics = MonthlyMetrics(rule_version=rule_version)
    checkpoints = _checkpoints(rules)
    metrics.overtime = {label: OvertimeBucket() for label, _ in checkpoints}
    work_start, late_rules = _late_rules(rules)

    late_events: list[LateEvent] = []
    leave_hours: dict[str, float] = {}
    # latest overtime end of the previous calendar day, if it was recorded
    previous: tuple[int, int | None] = (0, None)

    for day, key in day_keys(daily_data or {}):
        tokens = parse_day((daily_data or {})[key])
        previous_checkout = previous[1] if previous[0] == day - 1 else None
        checkout: int | None = None
        attended = False
        for position, token in enumerate(tokens):
            if isinstance(token, Present):
                attended = True
            elif isinstance(token, Late):
                attended = True
                minutes = token.minutes
                shifted = shift_late_minutes(minutes, previous_checkout, work_start, late_rules)
                if shifted is not None:
                    if shifted <= 0:
                        continue
                    minutes = shifted
                late_events.append(LateEvent(day, position, minutes))
            elif isinstance(token, Missing):
                metrics.missing_count += token.count
            elif isinstance(token, Absent):
                metrics.absenteeism_count += 1
            elif isinstance(token, Leave):
                if token.hours is not None:
                    hours = token.hours
                elif token.days is not None:
                    hours = token.days * rules.standard_day_hours
                else:
                    hours = rules.standard_day_hours
                key_name = token.leave_type.value
                leave_hours[key_name] = leave_hours.get(key_name, 0) + hours
            elif isinstance(token, Overtime):
                attended = True
                if token.hours is not None:
                    metrics.overtime_declared_hours += token.hours
                if token.end_minute is None:
                    continue
                checkout = max(checkout or 0, token.end_minute)
                hit = _attribute_overtime(token.end_minute, checkpoints)
                if hit is not None:
                    label, minutes = hit
                    bucket = metrics.overtime[label]
                    bucket.minutes += minutes
                    bucket.count += 1
                    metrics.overtime_total_minutes += minutes
            # Custom tokens are metrics-inert
        if attended:
            metrics.attended_days += 1
        previous = (day, checkout)

    metrics.should_attend_days = should_attend_days(month, rules)

    # Late + exemption
    metrics.late_count = len(late_events)
    metrics.late_minutes = sum(e.minutes for e in late_events)
    forgiven: list[LateEvent] = []
    if rules.late_exemption.enabled:
        forgiven = forgiven_late_events(
            late_events,
            rules.late_exemption.exempt_count,
            rules.late_exemption.exempt_minutes_threshold,
        )
    metrics.exempted_late_count = len(forgiven)
    metrics.exempted_late_minutes = metrics.late_minutes - sum(e.minutes for e in forgiven)
    unforgiven_count = metrics.late_count - metrics.exempted_late_count

    metrics.performance_penalty = compute_penalty(metrics.exempted_late_minutes, rules.penalty)

    # Leave
    metrics.leave_hours = leave_hours
    for rule in rules.leave_display:
        hours = leave_hours.get(rule.leave_type.value, 0)
        if hours > 0:
            metrics.leave_display[rule.leave_type.value] = _display_label(
                hours, rule.threshold_hours, rule.short_label, rule.long_label
            )

    # Full attendance
    fa = rules.full_attendance
    if fa.enabled:
        breaking_hours = sum(leave_hours.get(t.value, 0) for t in fa.breaking_leave_types)
        metrics.is_full_attendance = (
            unforgiven_count == 0
            and metrics.missing_count == 0
            and metrics.absenteeism_count == 0
            and breaking_hours == 0
        )
    metrics.full_attendance_bonus = fa.bonus_amount if metrics.is_full_attendance else 0

    return metrics
