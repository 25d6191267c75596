"""
Monthly attendance sheet: groups one company's confirmation records for a month
and carries the auto-confirm deadline.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (JSON, Boolean, Column, DateTime, Integer, String, Text,
                        UniqueConstraint)
from sqlalchemy.orm import relationship

from attendsheet.db.base import Base


class Sheet(Base):
    __tablename__ = "sheets"
    __table_args__ = (UniqueConstraint("company_id", "month", name="uq_sheet_company_month"),)

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    company_id: str = Column(String(64), nullable=False, index=True)  # type: ignore[assignment]
    month: str = Column(String(7), nullable=False)  # type: ignore[assignment]  # YYYY-MM
    title: str = Column(String(200), nullable=False)  # type: ignore[assignment]

    auto_confirm_enabled: bool = Column(Boolean, default=False, server_default="false")  # type: ignore[assignment]
    auto_confirm_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    # deadline value that already fired; a new deadline re-enables the scheduler
    auto_confirm_fired_for: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    feedback_contact: str | None = Column(String(200), nullable=True)  # type: ignore[assignment]
    show_columns: list | None = Column(JSON, nullable=True)  # type: ignore[assignment]
    reminder_text: str | None = Column(Text, nullable=True)  # type: ignore[assignment]

    created_by: str | None = Column(String(320), nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    records = relationship(
        "ConfirmationRecord",
        back_populates="sheet",
        order_by="ConfirmationRecord.id",
    )
