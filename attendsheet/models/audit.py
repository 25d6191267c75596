"""
Append-only audit log.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text

from attendsheet.db.base import Base

AUDIT_ACTIONS = {
    "EDIT",
    "SEND",
    "RECALL",
    "VIEW",
    "CONFIRM",
    "AUTO_CONFIRM",
    "ARCHIVE",
    "RULES_UPDATE",
    "RULES_ROLLBACK",
    "SHEET_CREATE",
}


class AuditEntry(Base):
    __tablename__ = "audit_log"
    __table_args__ = (Index("ix_audit_company_created", "company_id", "created_at"),)

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
    actor: str = Column(String(320), nullable=False)  # type: ignore[assignment]
    action: str = Column(String(20), nullable=False, index=True)  # type: ignore[assignment]
    target: str = Column(String(200), nullable=False)  # type: ignore[assignment]
    company_id: str | None = Column(String(64), nullable=True)  # type: ignore[assignment]
    before: dict | None = Column(JSON, nullable=True)  # type: ignore[assignment]
    after: dict | None = Column(JSON, nullable=True)  # type: ignore[assignment]
    reason: str | None = Column(Text, nullable=True)  # type: ignore[assignment]
    details: dict | None = Column(JSON, nullable=True)  # type: ignore[assignment]
