"""
Guarded lifecycle transitions over a ``ConfirmationRecord``.

Send, view and confirm are three independent flags. Each transition checks its
guard, mutates the record in place and returns a ``Transition`` holding the
before/after lifecycle snapshot for the audit entry. Nothing here touches the
database; callers own the session.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from attendsheet.core.exceptions import InvalidTransitionError
from attendsheet.models.confirmation import (AUTO_CONFIRMED, CONFIRM_AUTO,
                                             CONFIRM_MANUAL, CONFIRM_PENDING,
                                             CONFIRMED, SEND_PENDING, SENT,
                                             VIEW_PENDING, VIEWED,
                                             ConfirmationRecord,
                                             DispatchReceipt)

AUTO_CONFIRM_STAMP = "系统已于 {:%Y/%m/%d %H:%M} 自动确认"


@dataclass(frozen=True)
class Transition:
    name: str
    before: dict
    after: dict

    @property
    def changed(self) -> bool:
        return self.before != self.after


def auto_confirm_stamp(fired_at: datetime) -> str:
    return AUTO_CONFIRM_STAMP.format(fired_at)


def mark_sent(
    record: ConfirmationRecord,
    receipt: DispatchReceipt,
    now: datetime,
    resend: bool = False,
) -> Transition:
    if record.send_status == SENT and not resend:
        raise InvalidTransitionError("send", "record already sent; resend required")
    before = record.lifecycle_snapshot()
    record.send_status = SENT
    record.sent_at = now
    record.receipt = receipt
    record.is_modified_after_sent = False
    return Transition("send", before, record.lifecycle_snapshot())


def mark_viewed(record: ConfirmationRecord, now: datetime) -> Transition:
    if record.send_status != SENT:
        raise InvalidTransitionError("view", "record has not been sent")
    before = record.lifecycle_snapshot()
    if record.view_status != VIEWED:
        record.view_status = VIEWED
        record.viewed_at = now
    return Transition("view", before, record.lifecycle_snapshot())


def confirm(record: ConfirmationRecord, signature: str, now: datetime) -> Transition:
    if record.send_status != SENT:
        raise InvalidTransitionError("confirm", "record has not been sent")
    if not signature or not signature.strip():
        raise InvalidTransitionError("confirm", "signature is required")
    if record.confirm_status != CONFIRM_PENDING:
        raise InvalidTransitionError("confirm", f"record is already {record.confirm_status}")
    before = record.lifecycle_snapshot()
    record.confirm_status = CONFIRMED
    record.confirm_type = CONFIRM_MANUAL
    record.confirmed_at = now
    record.signature = signature
    return Transition("confirm", before, record.lifecycle_snapshot())


def auto_confirm(record: ConfirmationRecord, stamp: str, now: datetime) -> Transition:
    if record.confirm_status != CONFIRM_PENDING:
        raise InvalidTransitionError("auto-confirm", f"record is already {record.confirm_status}")
    before = record.lifecycle_snapshot()
    record.confirm_status = AUTO_CONFIRMED
    record.confirm_type = CONFIRM_AUTO
    record.confirmed_at = now
    record.signature = stamp
    return Transition("auto-confirm", before, record.lifecycle_snapshot())


def reset_after_recall(record: ConfirmationRecord) -> Transition:
    """Back to pending on all three flags. Raw facts and metrics are untouched."""
    if record.send_status != SENT:
        raise InvalidTransitionError("recall", "record has not been sent")
    before = record.lifecycle_snapshot()
    record.send_status = SEND_PENDING
    record.view_status = VIEW_PENDING
    record.confirm_status = CONFIRM_PENDING
    record.sent_at = None
    record.viewed_at = None
    record.confirmed_at = None
    record.confirm_type = None
    record.signature = None
    record.receipt = None
    record.is_modified_after_sent = False
    return Transition("recall", before, record.lifecycle_snapshot())
