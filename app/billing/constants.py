from __future__ import annotations

PROVIDER_PAYPAL = "paypal"
PROVIDER_PAYMONGO = "paymongo"
PROVIDERS = (PROVIDER_PAYPAL, PROVIDER_PAYMONGO)

PLAN_FREE = "free"
PLAN_PRO = "pro"
PLAN_VIP = "vip"
DEFAULT_PLAN_KEY = PLAN_FREE
PLAN_RANKS: dict[str, int] = {
    PLAN_FREE: 0,
    PLAN_PRO: 1,
    PLAN_VIP: 2,
}

EVENT_PAYMENT_SUCCEEDED = "payment_succeeded"
EVENT_PAYMENT_FAILED = "payment_failed"
EVENT_PAYMENT_REFUNDED = "payment_refunded"
EVENT_SUBSCRIPTION_UPDATED = "subscription_updated"
EVENT_SUBSCRIPTION_CANCELED = "subscription_canceled"
EVENT_DISPUTE_OPENED = "dispute_opened"
EVENT_UNKNOWN = "unknown"
NORMALIZED_EVENT_TYPES = frozenset(
    {
        EVENT_PAYMENT_SUCCEEDED,
        EVENT_PAYMENT_FAILED,
        EVENT_PAYMENT_REFUNDED,
        EVENT_SUBSCRIPTION_UPDATED,
        EVENT_SUBSCRIPTION_CANCELED,
        EVENT_DISPUTE_OPENED,
        EVENT_UNKNOWN,
    }
)
PAYMENT_EVENT_TYPES = frozenset(
    {EVENT_PAYMENT_SUCCEEDED, EVENT_PAYMENT_FAILED, EVENT_PAYMENT_REFUNDED}
)

SUBSCRIPTION_TRIALING = "trialing"
SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_PAST_DUE = "past_due"
SUBSCRIPTION_CANCELED = "canceled"
SUBSCRIPTION_INCOMPLETE = "incomplete"
SUBSCRIPTION_GRANTING_STATUSES = frozenset({SUBSCRIPTION_TRIALING, SUBSCRIPTION_ACTIVE})

ENTITLEMENT_ACTIVE = "active"
ENTITLEMENT_SCHEDULED = "scheduled"
ENTITLEMENT_EXPIRED = "expired"
ENTITLEMENT_CANCELED = "canceled"
ENTITLEMENT_REVOKED = "revoked"
ENTITLEMENT_STATUSES = frozenset(
    {
        ENTITLEMENT_ACTIVE,
        ENTITLEMENT_SCHEDULED,
        ENTITLEMENT_EXPIRED,
        ENTITLEMENT_CANCELED,
        ENTITLEMENT_REVOKED,
    }
)
# Lower rank means less access; used to detect downgrades of a window.
ENTITLEMENT_STATUS_RANKS: dict[str, int] = {
    ENTITLEMENT_REVOKED: 0,
    ENTITLEMENT_CANCELED: 0,
    ENTITLEMENT_EXPIRED: 0,
    ENTITLEMENT_SCHEDULED: 1,
    ENTITLEMENT_ACTIVE: 2,
}

SOURCE_ADMIN = "admin"
SOURCE_PROMO = "promo"
MANUAL_SOURCES = frozenset({SOURCE_ADMIN, SOURCE_PROMO})

ACTOR_PROVIDER = "provider"
ACTOR_ADMIN = "admin"
ACTOR_RECONCILIATION = "reconciliation"
ACTOR_SYSTEM = "system"

LEDGER_GRANT = "grant"
LEDGER_EXTEND = "extend"
LEDGER_REVOKE = "revoke"
LEDGER_EXPIRE = "expire"
LEDGER_UPDATE = "update"

REASON_DISPUTE = "dispute"
REASON_REFUND = "refund"
REASON_CANCELED = "subscription_canceled"
REASON_CANCEL_AT_PERIOD_END = "cancel_at_period_end"
REASON_PAYMENT = "payment"
REASON_SUBSCRIPTION = "subscription"
REASON_PLAN_CHANGE = "plan_change"
REASON_EXPIRED = "window_ended"
REASON_MERGED = "merged"

ORIGIN_WEBHOOK = "webhook"
ORIGIN_RECONCILIATION = "reconciliation"

INTERVAL_MONTH = "month"
INTERVAL_YEAR = "year"

DIFF_MISSING_INTERNAL_EVENT = "missing_internal_event"
DIFF_MISSING_PROVIDER_EVENT = "missing_provider_event"
DIFF_AMOUNT_MISMATCH = "amount_mismatch"
DIFF_CURRENCY_MISMATCH = "currency_mismatch"
DIFF_STATUS_MISMATCH = "status_mismatch"
DIFF_MISSING_ENTITLEMENT = "missing_entitlement"
DIFF_EXTRA_ENTITLEMENT = "extra_entitlement"
DIFF_UNPROCESSABLE_EVENT = "unprocessable_event"

ACTION_GRANT = "grant"
ACTION_REVOKE = "revoke"
ACTION_INVESTIGATE = "investigate"
