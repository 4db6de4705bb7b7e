from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, Request

from app.billing.constants import ACTOR_ADMIN
from app.billing.errors import PolicyBlockError
from app.billing.grants import GrantService
from app.billing.limits import limits_for_user, set_user_override
from app.billing.resolver import current_plan
from app.core.config import get_settings
from app.db.models.reconciliation_findings import ReconciliationFinding
from app.db.session import SessionLocal
from app.reconciliation import ReconciliationService
from app.reconciliation.errors import FindingNotFoundError, JobNotFoundError, JobNotRunnableError
from app.services.internal_auth import (
    extract_client_ip,
    is_client_ip_allowed,
    is_internal_request_authenticated,
)

from .internal_billing_models import (
    CurrentPlanResponse,
    EntitlementPeriodRequest,
    EntitlementPeriodResponse,
    FindingListResponse,
    FindingResponse,
    LimitOverrideRequest,
    ReconciliationJobRequest,
    ReconciliationJobResponse,
    ReconciliationRunResponse,
    ResolveFindingRequest,
    ResolveFindingResponse,
    RunJobResponse,
)

router = APIRouter(prefix="/internal/billing", tags=["internal", "billing"])
logger = structlog.get_logger(__name__)


def _assert_internal_access(request: Request) -> None:
    settings = get_settings()
    client_ip = extract_client_ip(
        request,
        trusted_proxies=getattr(settings, "internal_api_trusted_proxies", ""),
    )

    if not is_client_ip_allowed(client_ip=client_ip, allowlist=settings.internal_api_allowlist):
        logger.warning("internal_billing_auth_failed", reason="ip_not_allowed", client_ip=client_ip)
        raise HTTPException(status_code=403, detail={"code": "E_FORBIDDEN"})

    if not is_internal_request_authenticated(
        request,
        expected_token=settings.internal_api_token,
    ):
        logger.warning(
            "internal_billing_auth_failed",
            reason="invalid_credentials",
            client_ip=client_ip,
        )
        raise HTTPException(status_code=403, detail={"code": "E_FORBIDDEN"})


def _finding_response(finding: ReconciliationFinding) -> FindingResponse:
    return FindingResponse(
        id=finding.id,
        job_id=finding.job_id,
        run_id=finding.run_id,
        journal_entry_id=finding.journal_entry_id,
        diff_type=finding.diff_type,
        provider=finding.provider,
        provider_event_id=finding.provider_event_id,
        user_id=finding.user_id,
        entitlement_id=finding.entitlement_id,
        expected_amount_minor=finding.expected_amount_minor,
        actual_amount_minor=finding.actual_amount_minor,
        expected_currency=finding.expected_currency,
        actual_currency=finding.actual_currency,
        expected_status=finding.expected_status,
        actual_status=finding.actual_status,
        suggested_action=finding.suggested_action,
        auto_healable=finding.auto_healable,
        details=dict(finding.details or {}),
        created_at=finding.created_at,
    )


@router.get("/users/{user_id}/plan", response_model=CurrentPlanResponse)
async def get_current_plan(user_id: UUID, request: Request) -> CurrentPlanResponse:
    _assert_internal_access(request)

    async with SessionLocal.begin() as session:
        plan = await current_plan(session, user_id=user_id)
        limits = await limits_for_user(session, user_id=user_id, plan_key=plan.plan_key)

    return CurrentPlanResponse(
        user_id=user_id,
        plan_key=plan.plan_key,
        entitlement_id=plan.entitlement_id,
        valid_until=plan.valid_until,
        limits=limits,
    )


@router.post("/entitlements", response_model=EntitlementPeriodResponse)
async def upsert_entitlement_period(
    payload: EntitlementPeriodRequest,
    request: Request,
) -> EntitlementPeriodResponse:
    _assert_internal_access(request)

    now_utc = datetime.now(timezone.utc)
    try:
        async with SessionLocal.begin() as session:
            outcome = await GrantService.upsert_entitlement_period(
                session,
                user_id=payload.user_id,
                plan_key=payload.plan_key,
                source=payload.source,
                status=payload.status,
                starts_at=payload.starts_at,
                ends_at=payload.ends_at,
                reason=payload.reason,
                actor=ACTOR_ADMIN,
                now_utc=now_utc,
                idempotency_key=payload.idempotency_key,
            )
    except PolicyBlockError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "E_POLICY_BLOCKED", "message": str(exc)},
        ) from exc

    return EntitlementPeriodResponse(
        action=outcome.action,
        idempotent_replay=outcome.idempotent_replay,
        entitlement_ids=outcome.entitlement_ids,
        ledger_entry_ids=outcome.ledger_entry_ids,
        plan_key=payload.plan_key,
    )


@router.put("/users/{user_id}/limits/{limit_key}")
async def put_limit_override(
    user_id: UUID,
    limit_key: str,
    payload: LimitOverrideRequest,
    request: Request,
) -> dict[str, object]:
    _assert_internal_access(request)

    try:
        async with SessionLocal.begin() as session:
            await set_user_override(
                session,
                user_id=user_id,
                limit_key=limit_key,
                value=payload.value,
                reason=payload.reason,
                now_utc=datetime.now(timezone.utc),
            )
    except PolicyBlockError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "E_POLICY_BLOCKED", "message": str(exc)},
        ) from exc
    return {"user_id": str(user_id), "limit_key": limit_key, "value": payload.value}


@router.get("/findings", response_model=FindingListResponse)
async def list_findings(
    request: Request,
    provider: str | None = Query(default=None, max_length=16),
    diff_type: str | None = Query(default=None, max_length=32),
    job_id: UUID | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
) -> FindingListResponse:
    _assert_internal_access(request)

    findings = await ReconciliationService.list_open_findings(
        provider=provider,
        diff_type=diff_type,
        job_id=job_id,
        limit=limit,
    )
    return FindingListResponse(items=[_finding_response(item) for item in findings])


@router.post("/findings/{finding_id}/resolve", response_model=ResolveFindingResponse)
async def resolve_finding(
    finding_id: UUID,
    payload: ResolveFindingRequest,
    request: Request,
) -> ResolveFindingResponse:
    _assert_internal_access(request)

    try:
        resolved = await ReconciliationService.mark_resolved(
            finding_id,
            actor=payload.actor,
            note=payload.note,
        )
    except FindingNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "E_FINDING_NOT_FOUND"}) from exc
    if not resolved:
        raise HTTPException(status_code=409, detail={"code": "E_FINDING_ALREADY_RESOLVED"})
    return ResolveFindingResponse(finding_id=finding_id, resolved=True)


@router.post("/reconciliation/jobs", response_model=ReconciliationJobResponse)
async def enqueue_reconciliation_job(
    payload: ReconciliationJobRequest,
    request: Request,
) -> ReconciliationJobResponse:
    _assert_internal_access(request)

    try:
        job_id = await ReconciliationService.enqueue(
            job_type=payload.job_type,
            provider=payload.provider,
            date_from=payload.date_from,
            date_to=payload.date_to,
            params={"dry_run": payload.dry_run},
            created_by=payload.created_by,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "E_INVALID_JOB", "message": str(exc)},
        ) from exc
    return await get_reconciliation_job(job_id, request)


@router.get("/reconciliation/jobs/{job_id}", response_model=ReconciliationJobResponse)
async def get_reconciliation_job(job_id: UUID, request: Request) -> ReconciliationJobResponse:
    _assert_internal_access(request)

    try:
        job, runs = await ReconciliationService.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "E_JOB_NOT_FOUND"}) from exc
    return ReconciliationJobResponse(
        id=job.id,
        job_type=job.job_type,
        provider=job.provider,
        date_from=job.date_from,
        date_to=job.date_to,
        status=job.status,
        attempts=job.attempts,
        last_error=job.last_error,
        scheduled_for=job.scheduled_for,
        runs=[
            ReconciliationRunResponse(
                id=run.id,
                status=run.status,
                started_at=run.started_at,
                finished_at=run.finished_at,
                stats=dict(run.stats or {}),
                error=run.error,
            )
            for run in runs
        ],
    )


@router.post("/reconciliation/jobs/{job_id}/run", response_model=RunJobResponse)
async def run_reconciliation_job(job_id: UUID, request: Request) -> RunJobResponse:
    _assert_internal_access(request)

    try:
        summary = await ReconciliationService.run(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "E_JOB_NOT_FOUND"}) from exc
    except JobNotRunnableError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "E_JOB_NOT_RUNNABLE", "status": exc.status},
        ) from exc
    return RunJobResponse(
        job_id=summary.job_id,
        run_id=summary.run_id,
        status=summary.status,
        stats=summary.stats,
        error=summary.error,
    )


@router.post("/reconciliation/jobs/{job_id}/cancel")
async def cancel_reconciliation_job(job_id: UUID, request: Request) -> dict[str, object]:
    _assert_internal_access(request)

    try:
        cancelled = await ReconciliationService.cancel(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "E_JOB_NOT_FOUND"}) from exc
    if not cancelled:
        raise HTTPException(status_code=409, detail={"code": "E_JOB_NOT_CANCELLABLE"})
    return {"job_id": str(job_id), "status": "cancelled"}
