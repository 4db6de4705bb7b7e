from __future__ import annotations

from types import SimpleNamespace

import pytest

from app.billing.types import ProcessResult
from app.workers.tasks import payment_events


class _Session:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


def _patch_session(monkeypatch) -> None:
    monkeypatch.setattr(payment_events, "SessionLocal", SimpleNamespace(begin=lambda: _Session()))
    monkeypatch.setattr(
        payment_events,
        "get_settings",
        lambda: SimpleNamespace(journal_replay_stale_seconds=120),
    )


def test_replay_unprocessed_events_task_wrapper(monkeypatch) -> None:
    async def fake_async(*, batch_size: int) -> dict[str, int]:
        return {"examined": batch_size, "applied": batch_size, "errors": 0}

    monkeypatch.setattr(payment_events, "replay_unprocessed_events_async", fake_async)

    result = payment_events.replay_unprocessed_events(batch_size=9)
    assert result == {"examined": 9, "applied": 9, "errors": 0}


def test_check_journal_backlog_task_wrapper(monkeypatch) -> None:
    async def fake_async() -> dict[str, int]:
        return {"stuck_count": 0, "oldest_age_seconds": 0, "threshold_seconds": 600}

    monkeypatch.setattr(payment_events, "check_journal_backlog_async", fake_async)

    result = payment_events.check_journal_backlog()
    assert result["threshold_seconds"] == 600


@pytest.mark.asyncio
async def test_replay_counts_statuses_and_alerts_on_errors(monkeypatch) -> None:
    _patch_session(monkeypatch)
    alerts: list[tuple[str, dict[str, object]]] = []

    async def _list_unprocessed_ids(session, *, received_before, limit):
        return [1, 2, 3, 4]

    async def _process(journal_entry_id: int) -> ProcessResult:
        if journal_entry_id == 3:
            raise RuntimeError("deadlock detected")
        status = "finding" if journal_entry_id == 4 else "applied"
        return ProcessResult(journal_entry_id=journal_entry_id, status=status)

    async def _send_ops_alert(*, event: str, payload: dict[str, object]) -> bool:
        alerts.append((event, payload))
        return True

    monkeypatch.setattr(
        payment_events.ProviderEventsRepo, "list_unprocessed_ids", _list_unprocessed_ids
    )
    monkeypatch.setattr(payment_events, "process_journal_entry", _process)
    monkeypatch.setattr(payment_events, "send_ops_alert", _send_ops_alert)

    summary = await payment_events.replay_unprocessed_events_async(batch_size=10)

    assert summary["examined"] == 4
    assert summary["applied"] == 2
    assert summary["finding"] == 1
    assert summary["errors"] == 1
    assert [event for event, _ in alerts] == ["billing_replay_errors_detected"]


@pytest.mark.asyncio
async def test_replay_without_errors_sends_no_alert(monkeypatch) -> None:
    _patch_session(monkeypatch)

    async def _list_unprocessed_ids(session, *, received_before, limit):
        return [5]

    async def _process(journal_entry_id: int) -> ProcessResult:
        return ProcessResult(journal_entry_id=journal_entry_id, status="already_processed")

    async def _send_ops_alert(**kwargs) -> bool:
        raise AssertionError("no alert expected")

    monkeypatch.setattr(
        payment_events.ProviderEventsRepo, "list_unprocessed_ids", _list_unprocessed_ids
    )
    monkeypatch.setattr(payment_events, "process_journal_entry", _process)
    monkeypatch.setattr(payment_events, "send_ops_alert", _send_ops_alert)

    summary = await payment_events.replay_unprocessed_events_async()

    assert summary["already_processed"] == 1
    assert summary["errors"] == 0


@pytest.mark.asyncio
async def test_check_journal_backlog_alerts_on_stuck_entries(monkeypatch) -> None:
    _patch_session(monkeypatch)
    alerts: list[str] = []
    thresholds: list[int] = []

    async def _count(session, *, older_than_seconds):
        thresholds.append(older_than_seconds)
        return 3

    async def _age(session) -> int:
        return 900

    async def _send_ops_alert(*, event: str, payload: dict[str, object]) -> bool:
        alerts.append(event)
        return True

    monkeypatch.setattr(
        payment_events.ProviderEventsRepo, "count_unprocessed_older_than_seconds", _count
    )
    monkeypatch.setattr(payment_events.ProviderEventsRepo, "get_unprocessed_age_max_seconds", _age)
    monkeypatch.setattr(payment_events, "send_ops_alert", _send_ops_alert)

    result = await payment_events.check_journal_backlog_async()

    assert thresholds == [120 * payment_events.BACKLOG_ALERT_MULTIPLIER]
    assert result["stuck_count"] == 3
    assert alerts == ["billing_journal_backlog_detected"]
