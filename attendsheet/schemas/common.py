"""Small response and audit schemas shared across endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class LogoutResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
    db: bool
    redis: bool


class CountResponse(BaseModel):
    count: int


class AuditRead(BaseModel):
    id: int
    created_at: datetime | None
    actor: str
    action: str
    target: str
    company_id: str | None
    before: dict | None
    after: dict | None
    reason: str | None
    details: dict | None

    model_config = {"from_attributes": True}
