"""
Company rule configuration: one live row per company plus an immutable
snapshot per version.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint

from attendsheet.db.base import Base


class RuleConfig(Base):
    __tablename__ = "rule_configs"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    company_id: str = Column(String(64), unique=True, nullable=False, index=True)  # type: ignore[assignment]
    version: int = Column(Integer, nullable=False, default=1)  # type: ignore[assignment]
    rules: dict = Column(JSON, nullable=False)  # type: ignore[assignment]
    updated_by: str | None = Column(String(320), nullable=True)  # type: ignore[assignment]
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )


class RuleConfigSnapshot(Base):
    __tablename__ = "rule_config_snapshots"
    __table_args__ = (
        UniqueConstraint("company_id", "version", name="uq_rule_snapshot_company_version"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    company_id: str = Column(String(64), nullable=False, index=True)  # type: ignore[assignment]
    version: int = Column(Integer, nullable=False)  # type: ignore[assignment]
    payload: dict = Column(JSON, nullable=False)  # type: ignore[assignment]
    change_type: str = Column(String(20), nullable=False)  # type: ignore[assignment]
    # create | update | rollback
    reason: str | None = Column(Text, nullable=True)  # type: ignore[assignment]
    created_by: str | None = Column(String(320), nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
