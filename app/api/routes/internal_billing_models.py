from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field


class CurrentPlanResponse(BaseModel):
    user_id: UUID
    plan_key: str
    entitlement_id: UUID | None = None
    valid_until: datetime | None = None
    limits: dict[str, int | bool]


class EntitlementPeriodRequest(BaseModel):
    user_id: UUID
    plan_key: str = Field(min_length=1, max_length=32)
    source: str = Field(default="admin", min_length=1, max_length=32)
    status: str = Field(default="active", min_length=1, max_length=16)
    starts_at: datetime
    ends_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=255)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=128)


class EntitlementPeriodResponse(BaseModel):
    action: str
    idempotent_replay: bool
    entitlement_ids: list[UUID]
    ledger_entry_ids: list[int]
    plan_key: str


class LimitOverrideRequest(BaseModel):
    value: int | bool
    reason: str | None = Field(default=None, max_length=255)


class FindingResponse(BaseModel):
    id: UUID
    job_id: UUID | None = None
    run_id: UUID | None = None
    journal_entry_id: int | None = None
    diff_type: str
    provider: str | None = None
    provider_event_id: str | None = None
    user_id: UUID | None = None
    entitlement_id: UUID | None = None
    expected_amount_minor: int | None = None
    actual_amount_minor: int | None = None
    expected_currency: str | None = None
    actual_currency: str | None = None
    expected_status: str | None = None
    actual_status: str | None = None
    suggested_action: str
    auto_healable: bool
    details: dict[str, object]
    created_at: datetime


class FindingListResponse(BaseModel):
    items: list[FindingResponse]


class ResolveFindingRequest(BaseModel):
    actor: str = Field(min_length=1, max_length=64)
    note: str | None = Field(default=None, max_length=1000)


class ResolveFindingResponse(BaseModel):
    finding_id: UUID
    resolved: bool


class ReconciliationJobRequest(BaseModel):
    job_type: str = Field(min_length=1, max_length=32)
    provider: str | None = Field(default=None, max_length=16)
    date_from: date
    date_to: date
    dry_run: bool = False
    created_by: str | None = Field(default=None, max_length=64)


class ReconciliationRunResponse(BaseModel):
    id: UUID
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    stats: dict[str, object]
    error: str | None = None


class ReconciliationJobResponse(BaseModel):
    id: UUID
    job_type: str
    provider: str | None = None
    date_from: date
    date_to: date
    status: str
    attempts: int
    last_error: str | None = None
    scheduled_for: datetime | None = None
    runs: list[ReconciliationRunResponse] = Field(default_factory=list)


class RunJobResponse(BaseModel):
    job_id: UUID
    run_id: UUID
    status: str
    stats: dict[str, int]
    error: str | None = None
