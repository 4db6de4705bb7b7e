from __future__ import annotations

from collections.abc import Mapping

from app.billing.constants import (
    EVENT_DISPUTE_OPENED,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_REFUNDED,
    EVENT_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_CANCELED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_UNKNOWN,
    PROVIDER_PAYPAL,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_INCOMPLETE,
    SUBSCRIPTION_PAST_DUE,
)
from app.billing.errors import NormalizationError, NormalizationErrorKind
from app.billing.money import decimal_amount_to_minor, normalize_currency
from app.billing.plans import PlanCatalog, PlanPrice
from app.billing.types import EventEnvelope, NormalizedPaymentEvent

from .base import JournalEntryLike
from .fields import (
    as_mapping,
    optional_iso_datetime,
    optional_mapping,
    optional_str,
    parse_custom_id,
    parse_iso_datetime,
    required_str,
)

PAYMENT_EVENT_TYPES: dict[str, str] = {
    "PAYMENT.CAPTURE.COMPLETED": EVENT_PAYMENT_SUCCEEDED,
    "PAYMENT.SALE.COMPLETED": EVENT_PAYMENT_SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": EVENT_PAYMENT_FAILED,
    "PAYMENT.CAPTURE.DECLINED": EVENT_PAYMENT_FAILED,
    "PAYMENT.SALE.DENIED": EVENT_PAYMENT_FAILED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": EVENT_PAYMENT_FAILED,
    "PAYMENT.CAPTURE.REFUNDED": EVENT_PAYMENT_REFUNDED,
    "PAYMENT.CAPTURE.REVERSED": EVENT_PAYMENT_REFUNDED,
    "PAYMENT.SALE.REFUNDED": EVENT_PAYMENT_REFUNDED,
    "PAYMENT.SALE.REVERSED": EVENT_PAYMENT_REFUNDED,
}

# (normalized type, subscription status, cancel at period end)
SUBSCRIPTION_EVENT_TYPES: dict[str, tuple[str, str, bool]] = {
    "BILLING.SUBSCRIPTION.CREATED": (EVENT_SUBSCRIPTION_UPDATED, SUBSCRIPTION_INCOMPLETE, False),
    "BILLING.SUBSCRIPTION.ACTIVATED": (EVENT_SUBSCRIPTION_UPDATED, SUBSCRIPTION_ACTIVE, False),
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": (EVENT_SUBSCRIPTION_UPDATED, SUBSCRIPTION_ACTIVE, False),
    "BILLING.SUBSCRIPTION.UPDATED": (EVENT_SUBSCRIPTION_UPDATED, SUBSCRIPTION_ACTIVE, False),
    "BILLING.SUBSCRIPTION.SUSPENDED": (EVENT_SUBSCRIPTION_UPDATED, SUBSCRIPTION_PAST_DUE, False),
    # PayPal keeps the subscriber's paid time after a cancellation.
    "BILLING.SUBSCRIPTION.CANCELLED": (EVENT_SUBSCRIPTION_CANCELED, SUBSCRIPTION_CANCELED, True),
    "BILLING.SUBSCRIPTION.EXPIRED": (EVENT_SUBSCRIPTION_CANCELED, SUBSCRIPTION_CANCELED, False),
}

DISPUTE_EVENT_TYPES = frozenset({"CUSTOMER.DISPUTE.CREATED"})

# PayPal subscription statuses as reported on the resource itself.
_RESOURCE_STATUS_MAP: dict[str, str] = {
    "APPROVAL_PENDING": SUBSCRIPTION_INCOMPLETE,
    "APPROVED": SUBSCRIPTION_INCOMPLETE,
    "ACTIVE": SUBSCRIPTION_ACTIVE,
    "SUSPENDED": SUBSCRIPTION_PAST_DUE,
    "CANCELLED": SUBSCRIPTION_CANCELED,
    "EXPIRED": SUBSCRIPTION_CANCELED,
}


class PaypalNormalizer:
    provider = PROVIDER_PAYPAL

    def __init__(self, catalog: PlanCatalog) -> None:
        self._catalog = catalog

    def extract_envelope(self, payload: Mapping[str, object]) -> EventEnvelope:
        return EventEnvelope(
            provider=self.provider,
            provider_event_id=required_str(payload.get("id"), "paypal event id"),
            event_type=required_str(payload.get("event_type"), "paypal event_type"),
        )

    def normalize(self, entry: JournalEntryLike) -> NormalizedPaymentEvent:
        payload = as_mapping(entry.payload, "paypal payload")
        event_type = required_str(payload.get("event_type"), "paypal event_type")
        occurred_at = parse_iso_datetime(payload.get("create_time"), "paypal create_time")
        base = {
            "provider": self.provider,
            "provider_event_id": entry.provider_event_id,
            "occurred_at": occurred_at,
            "raw_ref": entry.id,
            "origin": entry.origin,
        }

        if event_type in PAYMENT_EVENT_TYPES:
            resource = as_mapping(payload.get("resource"), "paypal resource")
            return self._payment_event(PAYMENT_EVENT_TYPES[event_type], event_type, resource, base)
        if event_type in SUBSCRIPTION_EVENT_TYPES:
            resource = as_mapping(payload.get("resource"), "paypal resource")
            return self._subscription_event(event_type, resource, base)
        if event_type in DISPUTE_EVENT_TYPES:
            resource = as_mapping(payload.get("resource"), "paypal resource")
            return self._dispute_event(resource, base)
        return NormalizedPaymentEvent(type=EVENT_UNKNOWN, **base)

    def _resolve_price(self, hint: str | None, *, strict: bool = True) -> PlanPrice | None:
        if hint is None:
            return None
        price = self._catalog.lookup(self.provider, hint)
        if price is None and strict:
            raise NormalizationError(NormalizationErrorKind.UNMAPPED_PLAN, f"paypal plan {hint!r}")
        return price

    def _amount(self, resource: Mapping[str, object]) -> tuple[int | None, str | None]:
        amount = optional_mapping(resource.get("amount"))
        if not amount:
            breakdown = optional_mapping(resource.get("seller_receivable_breakdown"))
            amount = optional_mapping(breakdown.get("gross_amount"))
        if not amount:
            return None, None
        # Sale resources use {"total", "currency"}; captures use {"value", "currency_code"}.
        currency = normalize_currency(amount.get("currency_code", amount.get("currency")))
        value = amount.get("value", amount.get("total"))
        return decimal_amount_to_minor(value, currency), currency

    def _payment_event(
        self,
        normalized_type: str,
        event_type: str,
        resource: Mapping[str, object],
        base: dict[str, object],
    ) -> NormalizedPaymentEvent:
        hints = parse_custom_id(resource.get("custom_id") or resource.get("custom"))
        price = self._resolve_price(
            hints.get("plan"),
            strict=normalized_type == EVENT_PAYMENT_SUCCEEDED,
        )
        amount_minor, currency = self._amount(resource)
        payer = optional_mapping(resource.get("payer"))
        # The capture's own time, not the delivery time, so journaled webhooks and
        # reporting API records of one payment agree.
        resource_time = optional_iso_datetime(resource.get("create_time"), "paypal resource time")
        if resource_time is not None:
            base = {**base, "occurred_at": resource_time}

        return NormalizedPaymentEvent(
            type=normalized_type,
            customer_ref=optional_str(payer.get("payer_id")),
            subscription_ref=optional_str(resource.get("billing_agreement_id")),
            payment_ref=self._payment_ref(event_type, resource),
            plan_key=price.plan_key if price else None,
            price_key=price.price_key if price else None,
            interval=price.interval if price else None,
            amount_minor=amount_minor,
            currency=currency,
            user_hint=hints.get("user"),
            **base,
        )

    @staticmethod
    def _payment_ref(event_type: str, resource: Mapping[str, object]) -> str | None:
        if event_type.startswith("PAYMENT.SALE.") and event_type != "PAYMENT.SALE.COMPLETED":
            sale_id = optional_str(resource.get("sale_id"))
            if sale_id is not None:
                return sale_id
        if event_type in {"PAYMENT.CAPTURE.REFUNDED", "PAYMENT.CAPTURE.REVERSED"}:
            # Refund resources link back to the capture they reverse.
            links = resource.get("links")
            if isinstance(links, list):
                for link in links:
                    link_map = optional_mapping(link)
                    href = optional_str(link_map.get("href"))
                    if link_map.get("rel") == "up" and href and "/captures/" in href:
                        return href.rstrip("/").rsplit("/", 1)[-1]
        if event_type == "BILLING.SUBSCRIPTION.PAYMENT.FAILED":
            return None
        return optional_str(resource.get("id"))

    def _subscription_event(
        self,
        event_type: str,
        resource: Mapping[str, object],
        base: dict[str, object],
    ) -> NormalizedPaymentEvent:
        normalized_type, status, cancel_at_period_end = SUBSCRIPTION_EVENT_TYPES[event_type]
        resource_status = optional_str(resource.get("status"))
        if event_type == "BILLING.SUBSCRIPTION.UPDATED" and resource_status is not None:
            status = _RESOURCE_STATUS_MAP.get(resource_status.upper(), status)

        hints = parse_custom_id(resource.get("custom_id"))
        price = self._resolve_price(
            optional_str(resource.get("plan_id")) or hints.get("plan"),
            strict=normalized_type == EVENT_SUBSCRIPTION_UPDATED,
        )
        billing_info = optional_mapping(resource.get("billing_info"))
        last_payment = optional_mapping(billing_info.get("last_payment"))
        subscriber = optional_mapping(resource.get("subscriber"))

        period_start = optional_iso_datetime(
            last_payment.get("time") or resource.get("start_time"),
            "paypal period start",
        )
        period_end = optional_iso_datetime(
            billing_info.get("next_billing_time"),
            "paypal next_billing_time",
        )

        return NormalizedPaymentEvent(
            type=normalized_type,
            customer_ref=optional_str(subscriber.get("payer_id")),
            subscription_ref=required_str(resource.get("id"), "paypal subscription id"),
            plan_key=price.plan_key if price else None,
            price_key=price.price_key if price else None,
            interval=price.interval if price else None,
            subscription_status=status,
            period_start=period_start,
            period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
            user_hint=hints.get("user"),
            **base,
        )

    def _dispute_event(
        self,
        resource: Mapping[str, object],
        base: dict[str, object],
    ) -> NormalizedPaymentEvent:
        transactions = resource.get("disputed_transactions")
        transaction: Mapping[str, object] = {}
        if isinstance(transactions, list) and transactions:
            transaction = optional_mapping(transactions[0])
        payment_ref = optional_str(transaction.get("seller_transaction_id"))
        if payment_ref is None:
            raise NormalizationError(
                NormalizationErrorKind.MALFORMED_PAYLOAD,
                "paypal dispute names no disputed transaction",
            )
        hints = parse_custom_id(transaction.get("custom") or transaction.get("custom_id"))
        buyer = optional_mapping(transaction.get("buyer"))

        amount_minor = None
        currency = None
        dispute_amount = optional_mapping(resource.get("dispute_amount"))
        if dispute_amount:
            currency = normalize_currency(dispute_amount.get("currency_code"))
            amount_minor = decimal_amount_to_minor(dispute_amount.get("value"), currency)

        return NormalizedPaymentEvent(
            type=EVENT_DISPUTE_OPENED,
            customer_ref=optional_str(buyer.get("payer_id")),
            payment_ref=payment_ref,
            amount_minor=amount_minor,
            currency=currency,
            user_hint=hints.get("user"),
            **base,
        )
