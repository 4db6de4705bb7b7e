from __future__ import annotations

from collections.abc import Mapping

from app.billing.constants import (
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_REFUNDED,
    EVENT_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_CANCELED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_UNKNOWN,
    PROVIDER_PAYMONGO,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_INCOMPLETE,
    SUBSCRIPTION_PAST_DUE,
)
from app.billing.errors import NormalizationError, NormalizationErrorKind
from app.billing.money import integer_minor_amount, normalize_currency
from app.billing.plans import PlanCatalog, PlanPrice
from app.billing.types import EventEnvelope, NormalizedPaymentEvent

from .base import JournalEntryLike
from .fields import (
    as_mapping,
    optional_mapping,
    optional_str,
    optional_unix_timestamp,
    parse_unix_timestamp,
    required_str,
)

PAYMENT_EVENT_TYPES: dict[str, str] = {
    "payment.paid": EVENT_PAYMENT_SUCCEEDED,
    "link.payment.paid": EVENT_PAYMENT_SUCCEEDED,
    "checkout_session.payment.paid": EVENT_PAYMENT_SUCCEEDED,
    "payment.failed": EVENT_PAYMENT_FAILED,
    "payment.refunded": EVENT_PAYMENT_REFUNDED,
    "payment.refund.updated": EVENT_PAYMENT_REFUNDED,
}

# (normalized type, subscription status)
SUBSCRIPTION_EVENT_TYPES: dict[str, tuple[str, str]] = {
    "subscription.activated": (EVENT_SUBSCRIPTION_UPDATED, SUBSCRIPTION_ACTIVE),
    "subscription.updated": (EVENT_SUBSCRIPTION_UPDATED, SUBSCRIPTION_ACTIVE),
    "subscription.past_due": (EVENT_SUBSCRIPTION_UPDATED, SUBSCRIPTION_PAST_DUE),
    "subscription.unpaid": (EVENT_SUBSCRIPTION_UPDATED, SUBSCRIPTION_PAST_DUE),
    "subscription.incomplete_cancelled": (EVENT_SUBSCRIPTION_CANCELED, SUBSCRIPTION_CANCELED),
    "subscription.cancelled": (EVENT_SUBSCRIPTION_CANCELED, SUBSCRIPTION_CANCELED),
}

_RESOURCE_STATUS_MAP: dict[str, str] = {
    "active": SUBSCRIPTION_ACTIVE,
    "incomplete": SUBSCRIPTION_INCOMPLETE,
    "past_due": SUBSCRIPTION_PAST_DUE,
    "unpaid": SUBSCRIPTION_PAST_DUE,
    "cancelled": SUBSCRIPTION_CANCELED,
    "incomplete_cancelled": SUBSCRIPTION_CANCELED,
}


def _first_payment(resource_attrs: Mapping[str, object]) -> Mapping[str, object]:
    """Links and checkout sessions carry the paid payment in ``attributes.payments``."""
    payments = resource_attrs.get("payments")
    if not isinstance(payments, list) or not payments:
        return {}
    payment = optional_mapping(payments[0])
    # Payments are sometimes wrapped in their own {"data": {...}} envelope.
    if "data" in payment and "attributes" not in payment:
        payment = optional_mapping(payment.get("data"))
    return payment


class PaymongoNormalizer:
    provider = PROVIDER_PAYMONGO

    def __init__(self, catalog: PlanCatalog) -> None:
        self._catalog = catalog

    def extract_envelope(self, payload: Mapping[str, object]) -> EventEnvelope:
        data = as_mapping(payload.get("data"), "paymongo data")
        attributes = as_mapping(data.get("attributes"), "paymongo event attributes")
        return EventEnvelope(
            provider=self.provider,
            provider_event_id=required_str(data.get("id"), "paymongo event id"),
            event_type=required_str(attributes.get("type"), "paymongo event type"),
        )

    def normalize(self, entry: JournalEntryLike) -> NormalizedPaymentEvent:
        payload = as_mapping(entry.payload, "paymongo payload")
        data = as_mapping(payload.get("data"), "paymongo data")
        event_attrs = as_mapping(data.get("attributes"), "paymongo event attributes")
        event_type = required_str(event_attrs.get("type"), "paymongo event type").lower()
        occurred_at = parse_unix_timestamp(event_attrs.get("created_at"), "paymongo created_at")
        base = {
            "provider": self.provider,
            "provider_event_id": entry.provider_event_id,
            "occurred_at": occurred_at,
            "raw_ref": entry.id,
            "origin": entry.origin,
        }

        if event_type in PAYMENT_EVENT_TYPES:
            resource = as_mapping(event_attrs.get("data"), "paymongo resource")
            return self._payment_event(PAYMENT_EVENT_TYPES[event_type], resource, base)
        if event_type in SUBSCRIPTION_EVENT_TYPES:
            resource = as_mapping(event_attrs.get("data"), "paymongo resource")
            return self._subscription_event(event_type, resource, base)
        return NormalizedPaymentEvent(type=EVENT_UNKNOWN, **base)

    def _resolve_price(self, hint: str | None, *, strict: bool) -> PlanPrice | None:
        if hint is None:
            return None
        price = self._catalog.lookup(self.provider, hint)
        if price is None and strict:
            raise NormalizationError(
                NormalizationErrorKind.UNMAPPED_PLAN,
                f"paymongo plan {hint!r}",
            )
        return price

    def _payment_event(
        self,
        normalized_type: str,
        resource: Mapping[str, object],
        base: dict[str, object],
    ) -> NormalizedPaymentEvent:
        resource_type = optional_str(resource.get("type")) or "payment"
        resource_attrs = as_mapping(resource.get("attributes"), "paymongo resource attributes")
        metadata = dict(optional_mapping(resource_attrs.get("metadata")))

        if resource_type in {"link", "checkout_session"}:
            payment = _first_payment(resource_attrs)
            payment_attrs = optional_mapping(payment.get("attributes"))
            metadata = {**optional_mapping(payment_attrs.get("metadata")), **metadata}
            payment_ref = optional_str(payment.get("id")) or optional_str(resource.get("id"))
            amount_source = payment_attrs or resource_attrs
        elif resource_type == "refund":
            payment_attrs = resource_attrs
            payment_ref = optional_str(resource_attrs.get("payment_id"))
            amount_source = resource_attrs
        else:
            payment_attrs = resource_attrs
            payment_ref = optional_str(resource.get("id"))
            amount_source = resource_attrs

        amount_minor = None
        currency = None
        if amount_source.get("amount") is not None:
            currency = normalize_currency(amount_source.get("currency"))
            amount_minor = integer_minor_amount(amount_source.get("amount"))

        price = self._resolve_price(
            optional_str(metadata.get("plan_key")),
            strict=normalized_type == EVENT_PAYMENT_SUCCEEDED,
        )

        return NormalizedPaymentEvent(
            type=normalized_type,
            customer_ref=optional_str(payment_attrs.get("customer_id")),
            subscription_ref=optional_str(metadata.get("subscription_id")),
            payment_ref=payment_ref,
            plan_key=price.plan_key if price else None,
            price_key=price.price_key if price else None,
            interval=price.interval if price else None,
            amount_minor=amount_minor,
            currency=currency,
            user_hint=optional_str(metadata.get("user_id")),
            **base,
        )

    def _subscription_event(
        self,
        event_type: str,
        resource: Mapping[str, object],
        base: dict[str, object],
    ) -> NormalizedPaymentEvent:
        normalized_type, status = SUBSCRIPTION_EVENT_TYPES[event_type]
        attrs = as_mapping(resource.get("attributes"), "paymongo subscription attributes")
        resource_status = optional_str(attrs.get("status"))
        if event_type == "subscription.updated" and resource_status is not None:
            status = _RESOURCE_STATUS_MAP.get(resource_status.lower(), status)
        metadata = optional_mapping(attrs.get("metadata"))

        plan_hint = optional_str(metadata.get("plan_key")) or optional_str(attrs.get("plan_id"))
        price = self._resolve_price(plan_hint, strict=normalized_type == EVENT_SUBSCRIPTION_UPDATED)

        return NormalizedPaymentEvent(
            type=normalized_type,
            customer_ref=optional_str(attrs.get("customer_id")),
            subscription_ref=required_str(resource.get("id"), "paymongo subscription id"),
            plan_key=price.plan_key if price else None,
            price_key=price.price_key if price else None,
            interval=price.interval if price else None,
            subscription_status=status,
            period_start=optional_unix_timestamp(
                attrs.get("current_period_start"),
                "paymongo current_period_start",
            ),
            period_end=optional_unix_timestamp(
                attrs.get("current_period_end"),
                "paymongo current_period_end",
            ),
            cancel_at_period_end=bool(attrs.get("cancel_at_period_end", False)),
            user_hint=optional_str(metadata.get("user_id")),
            **base,
        )
