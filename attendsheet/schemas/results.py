"""Aggregate results for batch operations."""

from __future__ import annotations

from pydantic import BaseModel, Field, computed_field


class RecordFailure(BaseModel):
    record_id: int
    employee_id: str | None = None
    error: str


class BatchResult(BaseModel):
    action: str
    succeeded: list[int] = Field(default_factory=list)
    failed: list[RecordFailure] = Field(default_factory=list)
    partial: list[RecordFailure] = Field(default_factory=list)

    @computed_field  # type: ignore[misc]
    @property
    def summary(self) -> str:
        text = f"{len(self.succeeded)} succeeded, {len(self.failed)} failed"
        if self.partial:
            text += f", {len(self.partial)} partial"
        return text


class ReconcileResult(BaseModel):
    sheet_id: int
    month: str
    signed: int = 0
    queued: int = 0
    uploaded: int = 0
    listing_failed: bool = False
    failed: list[RecordFailure] = Field(default_factory=list)
