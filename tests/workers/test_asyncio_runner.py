from __future__ import annotations

import pytest
import structlog

from app.workers import asyncio_runner


def _count_disposals(monkeypatch) -> list[str]:
    disposals: list[str] = []

    async def _fake_dispose_engine() -> None:
        disposals.append("dispose")

    monkeypatch.setattr(asyncio_runner, "dispose_engine", _fake_dispose_engine)
    return disposals


def test_job_runs_on_fresh_pool_with_name_bound_to_logs(monkeypatch) -> None:
    disposals = _count_disposals(monkeypatch)
    seen: dict[str, object] = {}

    async def _job() -> dict[str, int]:
        seen.update(structlog.contextvars.get_contextvars())
        seen["disposals_before_body"] = len(disposals)
        return {"examined": 2}

    result = asyncio_runner.run_async_job(_job(), job="expire_ended_entitlements")

    assert result == {"examined": 2}
    assert seen["worker_job"] == "expire_ended_entitlements"
    assert seen["disposals_before_body"] == 1
    assert disposals == ["dispose", "dispose"]
    assert "worker_job" not in structlog.contextvars.get_contextvars()


def test_failing_job_still_releases_pool_and_propagates(monkeypatch) -> None:
    disposals = _count_disposals(monkeypatch)

    async def _job() -> None:
        raise RuntimeError("paypal reporting api unavailable")

    with pytest.raises(RuntimeError, match="paypal reporting api unavailable"):
        asyncio_runner.run_async_job(_job(), job="run_due_reconciliation_jobs")

    assert disposals == ["dispose", "dispose"]
