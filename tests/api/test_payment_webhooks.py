from __future__ import annotations

import asyncio
from types import SimpleNamespace

from fastapi.testclient import TestClient

from app.api.routes import payment_webhooks
from app.billing.errors import NormalizationError, NormalizationErrorKind, TransientIngestError
from app.billing.types import EventEnvelope, JournalDeliveryResult, ProcessResult
from app.main import app


def _patch_common(monkeypatch, *, timeout_ms: int = 2500) -> None:
    monkeypatch.setattr(
        payment_webhooks,
        "get_normalizer_registry",
        lambda: SimpleNamespace(providers=("paymongo", "paypal")),
    )
    monkeypatch.setattr(
        payment_webhooks,
        "get_settings",
        lambda: SimpleNamespace(webhook_processing_timeout_ms=timeout_ms),
    )


def _accepting(*, is_first_delivery: bool = True):
    calls: list[dict[str, object]] = []

    async def _accept_delivery(*, provider, payload, registry):
        calls.append({"provider": provider, "payload": payload})
        return (
            EventEnvelope(
                provider=provider,
                provider_event_id="WH-1",
                event_type="PAYMENT.CAPTURE.COMPLETED",
            ),
            JournalDeliveryResult(
                journal_entry_id=11,
                is_first_delivery=is_first_delivery,
                delivery_attempts=1 if is_first_delivery else 2,
            ),
        )

    return _accept_delivery, calls


def test_payment_webhook_rejects_unknown_provider(monkeypatch) -> None:
    _patch_common(monkeypatch)

    response = TestClient(app).post("/webhooks/payments/stripe", json={"id": "evt"})

    assert response.status_code == 404
    assert response.json() == {"status": "unknown_provider"}


def test_payment_webhook_rejects_invalid_json(monkeypatch) -> None:
    _patch_common(monkeypatch)

    response = TestClient(app).post(
        "/webhooks/payments/paypal",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json() == {"status": "invalid_json"}


def test_payment_webhook_rejects_non_object_payload(monkeypatch) -> None:
    _patch_common(monkeypatch)

    response = TestClient(app).post("/webhooks/payments/paypal", json=["a", "b"])

    assert response.status_code == 400
    assert response.json() == {"status": "invalid_payload"}


def test_payment_webhook_rejects_payload_without_event_identity(monkeypatch) -> None:
    _patch_common(monkeypatch)

    async def _accept_delivery(**kwargs):
        raise NormalizationError(NormalizationErrorKind.MALFORMED_PAYLOAD, "missing id")

    monkeypatch.setattr(payment_webhooks, "accept_delivery", _accept_delivery)

    response = TestClient(app).post("/webhooks/payments/paypal", json={"event_type": "X"})

    assert response.status_code == 400
    assert response.json() == {"status": "rejected"}


def test_payment_webhook_returns_503_when_journal_unavailable(monkeypatch) -> None:
    _patch_common(monkeypatch)

    async def _accept_delivery(**kwargs):
        raise TransientIngestError("database down")

    monkeypatch.setattr(payment_webhooks, "accept_delivery", _accept_delivery)

    response = TestClient(app).post("/webhooks/payments/paypal", json={"id": "WH-1"})

    assert response.status_code == 503
    assert response.json() == {"status": "retry"}


def test_payment_webhook_accepts_and_processes_inline(monkeypatch) -> None:
    _patch_common(monkeypatch)
    accept_delivery, calls = _accepting()
    processed: list[int] = []

    async def _process(journal_entry_id: int) -> ProcessResult:
        processed.append(journal_entry_id)
        return ProcessResult(journal_entry_id=journal_entry_id, status="applied")

    monkeypatch.setattr(payment_webhooks, "accept_delivery", accept_delivery)
    monkeypatch.setattr(payment_webhooks, "process_journal_entry", _process)

    response = TestClient(app).post(
        "/webhooks/payments/paypal",
        json={"id": "WH-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "status": "accepted",
        "provider_event_id": "WH-1",
        "duplicate": False,
        "processing": "applied",
    }
    assert calls[0]["provider"] == "paypal"
    assert processed == [11]


def test_payment_webhook_acknowledges_duplicate_delivery(monkeypatch) -> None:
    _patch_common(monkeypatch)
    accept_delivery, _ = _accepting(is_first_delivery=False)

    async def _process(journal_entry_id: int) -> ProcessResult:
        return ProcessResult(journal_entry_id=journal_entry_id, status="already_processed")

    monkeypatch.setattr(payment_webhooks, "accept_delivery", accept_delivery)
    monkeypatch.setattr(payment_webhooks, "process_journal_entry", _process)

    response = TestClient(app).post("/webhooks/payments/paypal", json={"id": "WH-1"})

    assert response.status_code == 200
    assert response.json()["duplicate"] is True
    assert response.json()["processing"] == "already_processed"


def test_payment_webhook_defers_processing_on_timeout(monkeypatch) -> None:
    _patch_common(monkeypatch, timeout_ms=10)
    accept_delivery, _ = _accepting()

    async def _slow_process(journal_entry_id: int) -> ProcessResult:
        await asyncio.sleep(1)
        return ProcessResult(journal_entry_id=journal_entry_id, status="applied")

    monkeypatch.setattr(payment_webhooks, "accept_delivery", accept_delivery)
    monkeypatch.setattr(payment_webhooks, "process_journal_entry", _slow_process)

    response = TestClient(app).post("/webhooks/payments/paypal", json={"id": "WH-1"})

    assert response.status_code == 200
    assert response.json()["processing"] == "deferred"


def test_payment_webhook_defers_processing_when_processing_fails(monkeypatch) -> None:
    _patch_common(monkeypatch)
    accept_delivery, _ = _accepting()

    async def _broken_process(journal_entry_id: int) -> ProcessResult:
        raise RuntimeError("lock timeout")

    monkeypatch.setattr(payment_webhooks, "accept_delivery", accept_delivery)
    monkeypatch.setattr(payment_webhooks, "process_journal_entry", _broken_process)

    response = TestClient(app).post("/webhooks/payments/paypal", json={"id": "WH-1"})

    assert response.status_code == 200
    assert response.json()["processing"] == "deferred"
