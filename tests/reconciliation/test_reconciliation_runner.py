from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest

from app.reconciliation import runner
from app.reconciliation.errors import JobNotRunnableError, ProviderFetchError
from app.reconciliation.types import DiffFinding, DiffResult, HealAction, ProviderRecord

NOW_UTC = datetime(2026, 3, 2, 3, 30, tzinfo=timezone.utc)


class _Session:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


def _settings(**overrides: object) -> SimpleNamespace:
    values: dict[str, object] = {
        "recon_max_attempts": 3,
        "recon_retry_backoff_seconds": 60,
        "recon_amount_tolerance_minor": 0,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _job(**overrides: object) -> SimpleNamespace:
    values: dict[str, object] = {
        "id": uuid4(),
        "job_type": "provider_settlements",
        "provider": "paypal",
        "date_from": date(2026, 3, 1),
        "date_to": date(2026, 3, 1),
        "params": {},
        "status": "queued",
        "attempts": 0,
        "last_error": None,
        "scheduled_for": None,
        "updated_at": NOW_UTC,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _healable_finding(payment_ref: str = "CAP-1") -> DiffFinding:
    record = ProviderRecord(
        provider="paypal",
        record_id=f"T-{payment_ref}",
        kind="charge",
        status="succeeded",
        payment_ref=payment_ref,
        occurred_at=NOW_UTC - timedelta(hours=20),
        amount_minor=1299,
        currency="USD",
        event_id=f"RECON-{payment_ref}",
        payload={"id": f"RECON-{payment_ref}"},
    )
    return DiffFinding(
        diff_type="missing_internal_event",
        suggested_action="grant",
        provider="paypal",
        provider_event_id=f"RECON-{payment_ref}",
        auto_healable=True,
        heal=HealAction(kind="ingest_provider_record", provider_record=record),
    )


def _scope(*, dry_run: bool = False) -> runner._JobScope:
    return runner._JobScope(
        job_id=uuid4(),
        run_id=uuid4(),
        job_type="provider_settlements",
        provider="paypal",
        date_from=date(2026, 3, 1),
        date_to=date(2026, 3, 1),
        dry_run=dry_run,
    )


def _patch_execute(
    monkeypatch,
    *,
    findings: list[DiffFinding],
    created: bool,
    heal_result: bool,
) -> dict[str, list[object]]:
    calls: dict[str, list[object]] = {"heal": [], "resolved": []}
    existing_id = uuid4()

    async def _fake_compute_diff(scope, **kwargs):
        del scope, kwargs
        return DiffResult(findings=findings, scanned_provider=len(findings))

    async def _fake_is_cancelled(job_id):
        del job_id
        return False

    async def _fake_record_finding(finding, **kwargs):
        del finding, kwargs
        return existing_id, created

    async def _fake_heal(action, **kwargs):
        del kwargs
        calls["heal"].append(action)
        return heal_result

    async def _fake_mark_resolved(finding_id, **kwargs):
        calls["resolved"].append((finding_id, kwargs["actor"]))
        return True

    monkeypatch.setattr(runner, "_compute_diff", _fake_compute_diff)
    monkeypatch.setattr(runner, "_is_cancelled", _fake_is_cancelled)
    monkeypatch.setattr(runner, "record_finding", _fake_record_finding)
    monkeypatch.setattr(runner, "heal", _fake_heal)
    monkeypatch.setattr(runner, "mark_resolved", _fake_mark_resolved)
    calls["existing_id"] = [existing_id]
    return calls


async def _execute(scope: runner._JobScope, stats: dict[str, int]) -> str:
    return await runner._execute(
        scope,
        stats,
        settings=_settings(),
        registry=SimpleNamespace(providers=("paypal",)),
        catalog=SimpleNamespace(),
        source_factory=lambda provider, settings: None,
    )


@pytest.mark.asyncio
async def test_rerun_heals_finding_left_open_by_earlier_run(monkeypatch) -> None:
    calls = _patch_execute(
        monkeypatch,
        findings=[_healable_finding()],
        created=False,
        heal_result=True,
    )
    stats = runner.empty_stats()

    status = await _execute(_scope(), stats)

    assert status == "succeeded"
    assert len(calls["heal"]) == 1
    assert calls["resolved"] == [(calls["existing_id"][0], "reconciliation")]
    assert stats["duplicates"] == 1
    assert stats["findings"] == 0
    assert stats["healed"] == 1
    assert stats["open"] == 0


@pytest.mark.asyncio
async def test_rerun_counts_still_open_finding_as_partial(monkeypatch) -> None:
    calls = _patch_execute(
        monkeypatch,
        findings=[_healable_finding()],
        created=False,
        heal_result=False,
    )
    stats = runner.empty_stats()

    status = await _execute(_scope(), stats)

    assert status == "partial"
    assert len(calls["heal"]) == 1
    assert calls["resolved"] == []
    assert stats["heal_failed"] == 1
    assert stats["open"] == 1


@pytest.mark.asyncio
async def test_dry_run_records_findings_without_healing(monkeypatch) -> None:
    calls = _patch_execute(
        monkeypatch,
        findings=[_healable_finding()],
        created=True,
        heal_result=True,
    )
    stats = runner.empty_stats()

    status = await _execute(_scope(dry_run=True), stats)

    assert status == "partial"
    assert calls["heal"] == []
    assert stats["findings"] == 1
    assert stats["open"] == 1


def _patch_job_store(monkeypatch, job: SimpleNamespace) -> dict[str, list[object]]:
    store: dict[str, list[object]] = {"runs": [], "alerts": []}

    async def _get_job(session, job_id):
        del session
        return job if job_id == job.id else None

    async def _try_mark_running(session, *, job_id, now_utc):
        del session, now_utc
        if job_id != job.id or job.status != "queued":
            return False
        job.status = "running"
        return True

    async def _create_run(session, *, run):
        del session
        store["runs"].append(run)
        return run

    async def _get_run(session, run_id):
        del session
        return next(run for run in store["runs"] if run.id == run_id)

    async def _finish_run(session, *, run, status, finished_at, stats, error=None):
        del session
        run.status = status
        run.finished_at = finished_at
        run.stats = stats
        run.error = error
        return run

    async def _send_ops_alert(*, event, payload):
        store["alerts"].append((event, payload))
        return True

    monkeypatch.setattr(runner, "SessionLocal", SimpleNamespace(begin=lambda: _Session()))
    monkeypatch.setattr(runner.ReconciliationJobsRepo, "get_by_id", _get_job)
    monkeypatch.setattr(runner.ReconciliationJobsRepo, "get_by_id_for_update", _get_job)
    monkeypatch.setattr(runner.ReconciliationJobsRepo, "try_mark_running", _try_mark_running)
    monkeypatch.setattr(runner.ReconciliationRunsRepo, "create", _create_run)
    monkeypatch.setattr(runner.ReconciliationRunsRepo, "get_by_id_for_update", _get_run)
    monkeypatch.setattr(runner.ReconciliationRunsRepo, "finish", _finish_run)
    monkeypatch.setattr(runner, "send_ops_alert", _send_ops_alert)
    return store


def _failing_fetch(monkeypatch) -> None:
    async def _fake_compute_diff(scope, **kwargs):
        del scope, kwargs
        raise ProviderFetchError("paypal reporting api returned 503")

    monkeypatch.setattr(runner, "_compute_diff", _fake_compute_diff)


async def _run(job: SimpleNamespace, **settings_overrides: object):
    return await runner.run_job(
        job.id,
        settings=_settings(**settings_overrides),
        registry=SimpleNamespace(providers=("paypal",)),
        catalog=SimpleNamespace(),
    )


@pytest.mark.asyncio
async def test_failed_run_requeues_job_with_backoff(monkeypatch) -> None:
    job = _job()
    store = _patch_job_store(monkeypatch, job)
    _failing_fetch(monkeypatch)

    summary = await _run(job)

    assert summary.status == "failed"
    assert summary.error == "paypal reporting api returned 503"
    assert store["runs"][0].status == "failed"
    assert job.status == "queued"
    assert job.attempts == 1
    assert job.last_error == "paypal reporting api returned 503"
    assert job.scheduled_for - job.updated_at == timedelta(seconds=60)
    assert store["alerts"] == []


@pytest.mark.asyncio
async def test_backoff_grows_with_attempts(monkeypatch) -> None:
    job = _job(attempts=1)
    _patch_job_store(monkeypatch, job)
    _failing_fetch(monkeypatch)

    await _run(job)

    assert job.status == "queued"
    assert job.attempts == 2
    assert job.scheduled_for - job.updated_at == timedelta(seconds=120)


@pytest.mark.asyncio
async def test_final_failed_attempt_stays_failed_and_alerts(monkeypatch) -> None:
    job = _job(attempts=2)
    store = _patch_job_store(monkeypatch, job)
    _failing_fetch(monkeypatch)

    summary = await _run(job)

    assert summary.status == "failed"
    assert job.status == "failed"
    assert job.attempts == 3
    assert [event for event, _ in store["alerts"]] == ["billing_reconciliation_run_failed"]
    assert store["alerts"][0][1]["attempts"] == 3


@pytest.mark.asyncio
async def test_run_with_open_findings_finishes_partial_and_alerts(monkeypatch) -> None:
    job = _job()
    store = _patch_job_store(monkeypatch, job)
    finding = DiffFinding(
        diff_type="amount_mismatch",
        suggested_action="investigate",
        provider="paypal",
        provider_event_id="WH-1",
        expected_amount_minor=1299,
        actual_amount_minor=999,
    )
    _patch_execute(monkeypatch, findings=[finding], created=True, heal_result=True)

    summary = await _run(job)

    assert summary.status == "partial"
    assert summary.stats["findings"] == 1
    assert summary.stats["open"] == 1
    assert job.status == "partial"
    assert job.attempts == 0
    assert [event for event, _ in store["alerts"]] == ["billing_reconciliation_run_partial"]


@pytest.mark.asyncio
async def test_clean_run_finishes_succeeded(monkeypatch) -> None:
    job = _job()
    store = _patch_job_store(monkeypatch, job)
    _patch_execute(monkeypatch, findings=[], created=True, heal_result=True)

    summary = await _run(job)

    assert summary.status == "succeeded"
    assert job.status == "succeeded"
    assert store["runs"][0].status == "succeeded"
    assert store["alerts"] == []


@pytest.mark.asyncio
async def test_operator_cancel_stops_run_between_findings(monkeypatch) -> None:
    job = _job()
    store = _patch_job_store(monkeypatch, job)
    calls = _patch_execute(
        monkeypatch,
        findings=[_healable_finding("CAP-1"), _healable_finding("CAP-2")],
        created=True,
        heal_result=True,
    )
    checks: list[bool] = []

    async def _cancel_after_first_heal(job_id):
        del job_id
        if calls["heal"]:
            job.status = "cancelled"
        checks.append(job.status == "cancelled")
        return job.status == "cancelled"

    monkeypatch.setattr(runner, "_is_cancelled", _cancel_after_first_heal)

    summary = await _run(job)

    assert checks == [False, True]
    assert len(calls["heal"]) == 1
    assert summary.status == "cancelled"
    assert job.status == "cancelled"
    assert store["runs"][0].status == "cancelled"
    assert store["alerts"] == []


@pytest.mark.asyncio
async def test_run_rejects_job_that_is_not_queued(monkeypatch) -> None:
    job = _job(status="running")
    _patch_job_store(monkeypatch, job)

    with pytest.raises(JobNotRunnableError):
        await _run(job)
