"""
Confirmation record: one employee's attendance for one month, with derived
metrics and the send / view / confirm lifecycle.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import (JSON, Boolean, Column, DateTime, ForeignKey, Integer,
                        String, Text, UniqueConstraint)
from sqlalchemy.orm import relationship

from attendsheet.db.base import Base

# ── Lifecycle values ────────────────────────────────────────────────
SEND_PENDING = "pending"
SENT = "sent"
VIEW_PENDING = "pending"
VIEWED = "viewed"
CONFIRM_PENDING = "pending"
CONFIRMED = "confirmed"
AUTO_CONFIRMED = "auto-confirmed"
CONFIRM_MANUAL = "manual"
CONFIRM_AUTO = "auto"

LIFECYCLE_FIELDS = (
    "send_status",
    "view_status",
    "confirm_status",
    "sent_at",
    "viewed_at",
    "confirmed_at",
    "confirm_type",
    "signature",
    "corp_task_id",
    "todo_task_id",
    "is_modified_after_sent",
)


@dataclass(frozen=True)
class DispatchReceipt:
    """Ids returned by the two notification channels. Both or neither."""

    corp_task_id: str
    todo_task_id: str

    def __post_init__(self) -> None:
        if not self.corp_task_id or not self.todo_task_id:
            raise ValueError("DispatchReceipt requires both channel ids")


class ConfirmationRecord(Base):
    __tablename__ = "confirmation_records"
    __table_args__ = (
        UniqueConstraint("employee_id", "month", "company_id", name="uq_record_employee_month"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    sheet_id: int = Column(Integer, ForeignKey("sheets.id"), nullable=False, index=True)  # type: ignore[assignment]
    company_id: str = Column(String(64), nullable=False)  # type: ignore[assignment]
    month: str = Column(String(7), nullable=False)  # type: ignore[assignment]
    employee_id: str = Column(String(64), nullable=False, index=True)  # type: ignore[assignment]
    employee_name: str = Column(String(200), nullable=False)  # type: ignore[assignment]
    department: str | None = Column(String(100), nullable=True)  # type: ignore[assignment]

    # raw facts: {"1": "√", "2": "迟到10分钟", ...}
    daily_data: dict = Column(JSON, nullable=False, default=dict)  # type: ignore[assignment]
    # derived, rewritten wholesale on every recompute
    metrics: dict = Column(JSON, nullable=False, default=dict)  # type: ignore[assignment]

    send_status: str = Column(String(16), nullable=False, default=SEND_PENDING)  # type: ignore[assignment]
    view_status: str = Column(String(16), nullable=False, default=VIEW_PENDING)  # type: ignore[assignment]
    confirm_status: str = Column(String(16), nullable=False, default=CONFIRM_PENDING)  # type: ignore[assignment]
    sent_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    viewed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    confirmed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    confirm_type: str | None = Column(String(16), nullable=True)  # type: ignore[assignment]
    signature: str | None = Column(Text, nullable=True)  # type: ignore[assignment]
    corp_task_id: str | None = Column(String(128), nullable=True)  # type: ignore[assignment]
    todo_task_id: str | None = Column(String(128), nullable=True)  # type: ignore[assignment]
    is_modified_after_sent: bool = Column(Boolean, default=False, server_default="false")  # type: ignore[assignment]

    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    sheet = relationship("Sheet", back_populates="records")

    @property
    def receipt(self) -> DispatchReceipt | None:
        if self.corp_task_id and self.todo_task_id:
            return DispatchReceipt(self.corp_task_id, self.todo_task_id)
        return None

    @receipt.setter
    def receipt(self, value: DispatchReceipt | None) -> None:
        self.corp_task_id = value.corp_task_id if value else None
        self.todo_task_id = value.todo_task_id if value else None

    @property
    def is_signed(self) -> bool:
        return self.confirm_status in (CONFIRMED, AUTO_CONFIRMED) and bool(self.signature)

    def lifecycle_snapshot(self) -> dict:
        """JSON-safe view of the lifecycle fields, for audit before/after."""
        out: dict = {}
        for name in LIFECYCLE_FIELDS:
            value = getattr(self, name)
            out[name] = value.isoformat() if isinstance(value, datetime) else value
        return out
