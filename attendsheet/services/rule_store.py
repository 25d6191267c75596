"""
Versioned, company-scoped rule configuration.

Every mutation (update or rollback) bumps ``version`` by one and writes an
immutable snapshot of the resulting rule set, so any earlier version can be
restored. Invalid rule sets are rejected here, before they are stored.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from attendsheet.core.clock import Clock, SystemClock
from attendsheet.core.exceptions import ConfigurationError, SnapshotNotFoundError
from attendsheet.db.session import SessionFactory
from attendsheet.engine.tokens import parse_clock
from attendsheet.models.rule_config import RuleConfig, RuleConfigSnapshot
from attendsheet.schemas.rules import (LateExemptionRules, LateRule, PenaltyRules,
                                       PenaltyTier, RuleSet)
from attendsheet.services.audit import AuditSink

logger = logging.getLogger(__name__)


def seed_rule_set() -> RuleSet:
    """Rule set given to a company the first time it is looked up."""
    return RuleSet(
        late_exemption=LateExemptionRules(enabled=True, exempt_count=3, exempt_minutes_threshold=15),
        penalty=PenaltyRules(mode="capped", max_penalty=250),
        late_rules=[
            LateRule(previous_day_checkout="18:30", late_threshold="09:01"),
            LateRule(previous_day_checkout="20:30", late_threshold="09:31"),
            LateRule(previous_day_checkout="24:00", late_threshold="13:31"),
        ],
    )


# ── Validation ──────────────────────────────────────────────────────
def _tier_errors(tiers: list[PenaltyTier]) -> list[str]:
    if not tiers:
        return ["penalty ladder needs at least one tier"]
    errors: list[str] = []
    if tiers[0].min != 0:
        errors.append("first penalty tier must start at 0")
    for i, tier in enumerate(tiers):
        last = i == len(tiers) - 1
        if tier.amount < 0:
            errors.append(f"tier {i}: amount must be non-negative")
        if tier.max is None:
            if not last:
                errors.append(f"tier {i}: only the last tier may be open ended")
            continue
        if tier.min >= tier.max:
            errors.append(f"tier {i}: min {tier.min:g} must be below max {tier.max:g}")
        if not last and tiers[i + 1].min != tier.max:
            errors.append(
                f"tier {i}: max {tier.max:g} must equal next tier min {tiers[i + 1].min:g}"
            )
    for i in range(1, len(tiers)):
        if tiers[i].amount < tiers[i - 1].amount:
            errors.append(f"tier {i}: amounts must be non-decreasing")
    return errors


def _late_rule_errors(rules: RuleSet) -> list[str]:
    errors: list[str] = []
    try:
        work_start = parse_clock(rules.work_start)
    except ValueError as exc:
        errors.append(f"work_start: {exc}")
        work_start = None

    seen: set[int] = set()
    for i, rule in enumerate(rules.late_rules):
        try:
            checkout = parse_clock(rule.previous_day_checkout)
            threshold = parse_clock(rule.late_threshold)
        except ValueError as exc:
            errors.append(f"late rule {i}: {exc}")
            continue
        if checkout in seen:
            errors.append(f"late rule {i}: duplicate checkout time {rule.previous_day_checkout}")
        seen.add(checkout)
        if work_start is not None and threshold < work_start:
            errors.append(f"late rule {i}: threshold {rule.late_threshold} is before work_start")
    return errors


def validate_rule_set(rules: RuleSet) -> None:
    """Raise ``ConfigurationError`` listing every violated constraint."""
    errors: list[str] = []

    ex = rules.late_exemption
    if ex.exempt_count < 0:
        errors.append("exempt_count must be non-negative")
    if ex.exempt_minutes_threshold < 0:
        errors.append("exempt_minutes_threshold must be non-negative")

    pen = rules.penalty
    if pen.calc == "ladder":
        errors.extend(_tier_errors(pen.tiers))
    if pen.per_minute_rate < 0:
        errors.append("per_minute_rate must be non-negative")
    if pen.fixed_amount < 0:
        errors.append("fixed_amount must be non-negative")
    if pen.max_penalty < 0:
        errors.append("max_penalty must be non-negative")

    if rules.full_attendance.bonus_amount < 0:
        errors.append("bonus_amount must be non-negative")

    previous = -1
    for label in rules.overtime_checkpoints:
        try:
            minute = parse_clock(label)
        except ValueError as exc:
            errors.append(str(exc))
            continue
        if minute <= previous:
            errors.append(f"overtime checkpoint {label} is not after the previous one")
        previous = minute

    seen = set()
    for rule in rules.leave_display:
        if rule.leave_type in seen:
            errors.append(f"duplicate leave display rule for {rule.leave_type.value}")
        seen.add(rule.leave_type)
        if rule.threshold_hours < 0:
            errors.append(f"leave display threshold for {rule.leave_type.value} must be non-negative")

    if rules.standard_day_hours <= 0:
        errors.append("standard_day_hours must be positive")

    errors.extend(_late_rule_errors(rules))

    days = rules.attendance_days
    if days.method == "fixed" and (days.fixed_days is None or not 0 < days.fixed_days <= 31):
        errors.append("fixed_days must be between 1 and 31 when method is fixed")

    if errors:
        raise ConfigurationError("Invalid rule configuration", errors)


# ── Store ───────────────────────────────────────────────────────────
class RuleConfigStore:
    def __init__(
        self,
        session_factory: SessionFactory,
        audit: AuditSink,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._clock = clock or SystemClock()

    async def get_config(self, company_id: str) -> RuleSet:
        row = await self.get_record(company_id)
        return RuleSet.model_validate(row.rules)

    async def get_record(self, company_id: str) -> RuleConfig:
        """Live row for *company_id*, seeding version 1 on first access."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(RuleConfig).where(RuleConfig.company_id == company_id)
            )
            row = result.scalar_one_or_none()
            if row is not None:
                return row

            payload = seed_rule_set().model_dump(mode="json")
            row = RuleConfig(
                company_id=company_id,
                version=1,
                rules=payload,
                updated_by="system",
                updated_at=self._clock.now(),
            )
            session.add(row)
            session.add(
                RuleConfigSnapshot(
                    company_id=company_id,
                    version=1,
                    payload=payload,
                    change_type="create",
                    created_by="system",
                    created_at=self._clock.now(),
                )
            )
            try:
                await session.commit()
                logger.info("Seeded rule configuration for company %s", company_id)
            except IntegrityError:
                await session.rollback()
                result = await session.execute(
                    select(RuleConfig).where(RuleConfig.company_id == company_id)
                )
                row = result.scalar_one()
                logger.info("Concurrent rule seed for company %s resolved", company_id)
            return row

    async def update_config(
        self,
        company_id: str,
        rules: RuleSet,
        actor: str,
        reason: str | None = None,
    ) -> RuleConfig:
        validate_rule_set(rules)
        await self.get_record(company_id)
        return await self._write_version(
            company_id, rules.model_dump(mode="json"), actor, "update", reason
        )

    async def rollback(
        self,
        company_id: str,
        version: int,
        actor: str,
        reason: str | None = None,
    ) -> RuleConfig:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RuleConfigSnapshot).where(
                    RuleConfigSnapshot.company_id == company_id,
                    RuleConfigSnapshot.version == version,
                )
            )
            snapshot = result.scalar_one_or_none()
        if snapshot is None:
            raise SnapshotNotFoundError(company_id, version)
        validate_rule_set(RuleSet.model_validate(snapshot.payload))
        return await self._write_version(
            company_id,
            dict(snapshot.payload),
            actor,
            "rollback",
            reason or f"rollback to v{version}",
        )

    async def history(self, company_id: str) -> list[RuleConfigSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RuleConfigSnapshot)
                .where(RuleConfigSnapshot.company_id == company_id)
                .order_by(RuleConfigSnapshot.version.desc())
            )
            return list(result.scalars().all())

    async def _write_version(
        self,
        company_id: str,
        payload: dict,
        actor: str,
        change_type: str,
        reason: str | None,
    ) -> RuleConfig:
        now = self._clock.now()
        async with self._session_factory() as session:
            result = await session.execute(
                select(RuleConfig)
                .where(RuleConfig.company_id == company_id)
                .with_for_update()
            )
            row = result.scalar_one()
            before = {"version": row.version, "rules": row.rules}

            row.version = row.version + 1
            row.rules = payload
            row.updated_by = actor
            row.updated_at = now
            session.add(
                RuleConfigSnapshot(
                    company_id=company_id,
                    version=row.version,
                    payload=payload,
                    change_type=change_type,
                    reason=reason,
                    created_by=actor,
                    created_at=now,
                )
            )
            await session.commit()

        logger.info("Rule configuration for %s is now v%d (%s)", company_id, row.version, change_type)
        self._audit.append(
            actor=actor,
            action="RULES_ROLLBACK" if change_type == "rollback" else "RULES_UPDATE",
            target=f"rules:{company_id}",
            company_id=company_id,
            before=before,
            after={"version": row.version, "rules": payload},
            reason=reason,
        )
        return row
