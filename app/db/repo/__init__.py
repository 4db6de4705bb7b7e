from app.db.repo.billing_identities_repo import BillingIdentitiesRepo
from app.db.repo.entitlements_repo import EntitlementsRepo
from app.db.repo.ledger_repo import LedgerRepo
from app.db.repo.provider_events_repo import ProviderEventsRepo
from app.db.repo.reconciliation_findings_repo import ReconciliationFindingsRepo
from app.db.repo.reconciliation_jobs_repo import ReconciliationJobsRepo
from app.db.repo.reconciliation_runs_repo import ReconciliationRunsRepo
from app.db.repo.subscriptions_repo import SubscriptionsRepo
from app.db.repo.user_current_plans_repo import UserCurrentPlansRepo
from app.db.repo.user_limit_overrides_repo import UserLimitOverridesRepo

__all__ = [
    "BillingIdentitiesRepo",
    "EntitlementsRepo",
    "LedgerRepo",
    "ProviderEventsRepo",
    "ReconciliationFindingsRepo",
    "ReconciliationJobsRepo",
    "ReconciliationRunsRepo",
    "SubscriptionsRepo",
    "UserCurrentPlansRepo",
    "UserLimitOverridesRepo",
]
