from app.db.models.billing_identities import BillingIdentity
from app.db.models.entitlements import Entitlement
from app.db.models.ledger_entries import LedgerEntry
from app.db.models.provider_events import RawProviderEvent
from app.db.models.reconciliation_findings import ReconciliationFinding
from app.db.models.reconciliation_jobs import ReconciliationJob
from app.db.models.reconciliation_runs import ReconciliationRun
from app.db.models.subscriptions import Subscription
from app.db.models.user_current_plans import UserCurrentPlan
from app.db.models.user_limit_overrides import UserLimitOverride

__all__ = [
    "BillingIdentity",
    "Entitlement",
    "LedgerEntry",
    "RawProviderEvent",
    "ReconciliationFinding",
    "ReconciliationJob",
    "ReconciliationRun",
    "Subscription",
    "UserCurrentPlan",
    "UserLimitOverride",
]
