from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from app.billing.errors import NormalizationError, NormalizationErrorKind
from app.billing.normalizers import PaypalNormalizer
from app.billing.plans import build_plan_catalog

USER_ID = "4b5b8f7e-1d0a-4f4c-9a55-3c1a3b0f2e11"
PAYMENTS_API = "https://api.paypal.com/v2/payments"


def _entry(payload: dict[str, object], *, entry_id: int = 11) -> SimpleNamespace:
    return SimpleNamespace(
        id=entry_id,
        provider="paypal",
        provider_event_id=str(payload.get("id", "WH-missing")),
        event_type=str(payload.get("event_type", "")),
        payload=payload,
        origin="webhook",
    )


def _normalizer() -> PaypalNormalizer:
    return PaypalNormalizer(build_plan_catalog(provider_refs={"paypal": {"P-PRO": "pro_monthly"}}))


def _capture_completed(**resource_overrides: object) -> dict[str, object]:
    resource: dict[str, object] = {
        "id": "8MC585209K746392H",
        "status": "COMPLETED",
        "amount": {"currency_code": "USD", "value": "12.99"},
        "custom_id": f"user:{USER_ID}|plan:pro_monthly|provider:paypal",
        "payer": {"payer_id": "PAYER123"},
    }
    resource.update(resource_overrides)
    return {
        "id": "WH-1",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "create_time": "2026-03-01T10:00:00Z",
        "resource": resource,
    }


def test_extract_envelope_reads_event_id_and_type() -> None:
    envelope = _normalizer().extract_envelope(_capture_completed())

    assert envelope.provider == "paypal"
    assert envelope.provider_event_id == "WH-1"
    assert envelope.event_type == "PAYMENT.CAPTURE.COMPLETED"


def test_extract_envelope_rejects_payload_without_id() -> None:
    with pytest.raises(NormalizationError) as exc_info:
        _normalizer().extract_envelope({"event_type": "PAYMENT.CAPTURE.COMPLETED"})
    assert exc_info.value.kind is NormalizationErrorKind.MALFORMED_PAYLOAD


def test_capture_completed_normalizes_to_payment_succeeded() -> None:
    event = _normalizer().normalize(_entry(_capture_completed()))

    assert event.type == "payment_succeeded"
    assert event.payment_ref == "8MC585209K746392H"
    assert event.amount_minor == 1299
    assert event.currency == "USD"
    assert event.plan_key == "pro"
    assert event.interval == "month"
    assert event.customer_ref == "PAYER123"
    assert event.user_hint == USER_ID
    assert event.occurred_at == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    assert event.raw_ref == 11


def test_capture_completed_with_unmapped_plan_raises_unmapped_plan() -> None:
    payload = _capture_completed(custom_id=f"user:{USER_ID}|plan:gold_monthly")

    with pytest.raises(NormalizationError) as exc_info:
        _normalizer().normalize(_entry(payload))
    assert exc_info.value.kind is NormalizationErrorKind.UNMAPPED_PLAN


def test_float_amount_is_rejected_as_malformed() -> None:
    payload = _capture_completed(amount={"currency_code": "USD", "value": 12.99})

    with pytest.raises(NormalizationError) as exc_info:
        _normalizer().normalize(_entry(payload))
    assert exc_info.value.kind is NormalizationErrorKind.MALFORMED_PAYLOAD


def test_capture_refund_resolves_original_capture_from_up_link() -> None:
    payload = {
        "id": "WH-2",
        "event_type": "PAYMENT.CAPTURE.REFUNDED",
        "create_time": "2026-03-05T08:30:00Z",
        "resource": {
            "id": "1JU08902781691411",
            "amount": {"currency_code": "USD", "value": "12.99"},
            "links": [
                {"rel": "self", "href": f"{PAYMENTS_API}/refunds/1JU08902781691411"},
                {"rel": "up", "href": f"{PAYMENTS_API}/captures/8MC585209K746392H"},
            ],
        },
    }

    event = _normalizer().normalize(_entry(payload))

    assert event.type == "payment_refunded"
    assert event.payment_ref == "8MC585209K746392H"
    assert event.amount_minor == 1299


def test_subscription_cancelled_keeps_paid_time() -> None:
    payload = {
        "id": "WH-3",
        "event_type": "BILLING.SUBSCRIPTION.CANCELLED",
        "create_time": "2026-03-10T00:00:00Z",
        "resource": {
            "id": "I-BW452GLLEP1G",
            "status": "CANCELLED",
            "plan_id": "P-PRO",
            "custom_id": f"user:{USER_ID}",
            "subscriber": {"payer_id": "PAYER123"},
            "billing_info": {"next_billing_time": "2026-04-01T00:00:00Z"},
        },
    }

    event = _normalizer().normalize(_entry(payload))

    assert event.type == "subscription_canceled"
    assert event.subscription_ref == "I-BW452GLLEP1G"
    assert event.subscription_status == "canceled"
    assert event.cancel_at_period_end is True
    assert event.plan_key == "pro"
    assert event.period_end == datetime(2026, 4, 1, tzinfo=timezone.utc)


def test_subscription_updated_uses_resource_status() -> None:
    payload = {
        "id": "WH-4",
        "event_type": "BILLING.SUBSCRIPTION.UPDATED",
        "create_time": "2026-03-10T00:00:00Z",
        "resource": {"id": "I-BW452GLLEP1G", "status": "SUSPENDED", "plan_id": "P-PRO"},
    }

    event = _normalizer().normalize(_entry(payload))

    assert event.type == "subscription_updated"
    assert event.subscription_status == "past_due"


def test_dispute_created_points_at_disputed_transaction() -> None:
    payload = {
        "id": "WH-5",
        "event_type": "CUSTOMER.DISPUTE.CREATED",
        "create_time": "2026-03-12T00:00:00Z",
        "resource": {
            "dispute_amount": {"currency_code": "USD", "value": "12.99"},
            "disputed_transactions": [
                {"seller_transaction_id": "8MC585209K746392H", "buyer": {"payer_id": "PAYER123"}},
            ],
        },
    }

    event = _normalizer().normalize(_entry(payload))

    assert event.type == "dispute_opened"
    assert event.payment_ref == "8MC585209K746392H"
    assert event.amount_minor == 1299


def test_unrecognised_event_type_normalizes_to_unknown() -> None:
    payload = {
        "id": "WH-6",
        "event_type": "CHECKOUT.ORDER.APPROVED",
        "create_time": "2026-03-12T00:00:00Z",
        "resource": {},
    }

    assert _normalizer().normalize(_entry(payload)).type == "unknown"


def test_payment_time_comes_from_capture_not_delivery() -> None:
    payload = _capture_completed(create_time="2026-03-01T09:58:12Z")
    payload["create_time"] = "2026-03-01T10:07:45Z"

    event = _normalizer().normalize(_entry(payload))

    assert event.occurred_at == datetime(2026, 3, 1, 9, 58, 12, tzinfo=timezone.utc)
