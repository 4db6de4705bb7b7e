from __future__ import annotations

from app.core.logging import REDACTED_VALUE, redact_secrets


def test_secret_keys_are_redacted_at_any_depth() -> None:
    event = redact_secrets(
        None,
        "info",
        {
            "event": "paypal_webhook_rejected",
            "client_secret": "EJx-abc",
            "headers": {"paypal-transmission-sig": "c2lnbmF0dXJl", "content-type": "json"},
            "provider_event_id": "WH-1",
        },
    )

    assert event["event"] == "paypal_webhook_rejected"
    assert event["client_secret"] == REDACTED_VALUE
    assert event["headers"] == {
        "paypal-transmission-sig": REDACTED_VALUE,
        "content-type": "json",
    }
    assert event["provider_event_id"] == "WH-1"


def test_bearer_tokens_are_redacted_inside_values() -> None:
    event = redact_secrets(
        None,
        "warning",
        {"event": "provider_fetch_failed", "error": "401 for Bearer A21AAF.x-y_z"},
    )

    assert event["error"] == f"401 for {REDACTED_VALUE}"
