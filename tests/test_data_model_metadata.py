from __future__ import annotations

from sqlalchemy import CheckConstraint, UniqueConstraint

from app.db.models import (  # noqa: F401
    BillingIdentity,
    Entitlement,
    LedgerEntry,
    RawProviderEvent,
    ReconciliationFinding,
    ReconciliationJob,
    ReconciliationRun,
    Subscription,
    UserCurrentPlan,
    UserLimitOverride,
)
from app.db.models.base import Base


def _check_names(table_name: str) -> set[str]:
    table = Base.metadata.tables[table_name]
    return {
        constraint.name
        for constraint in table.constraints
        if isinstance(constraint, CheckConstraint)
    }


def _unique_names(table_name: str) -> set[str]:
    table = Base.metadata.tables[table_name]
    return {
        constraint.name
        for constraint in table.constraints
        if isinstance(constraint, UniqueConstraint)
    }


def _index_names(table_name: str) -> set[str]:
    return {index.name for index in Base.metadata.tables[table_name].indexes}


def test_all_billing_tables_registered() -> None:
    expected_tables = {
        "provider_events",
        "billing_identities",
        "subscriptions",
        "entitlements",
        "ledger_entries",
        "user_current_plans",
        "user_limit_overrides",
        "reconciliation_jobs",
        "reconciliation_runs",
        "reconciliation_findings",
    }
    assert expected_tables == set(Base.metadata.tables)


def test_journal_is_unique_per_provider_event() -> None:
    assert "uq_provider_events_provider_event_id" in _unique_names("provider_events")
    assert "idx_provider_events_unprocessed" in _index_names("provider_events")
    assert "ck_provider_events_provider" in _check_names("provider_events")


def test_identity_and_entitlement_constraints_present() -> None:
    assert "uq_billing_identities_provider_customer_ref" in _unique_names("billing_identities")
    assert "uq_billing_identities_current_per_user_provider" in _index_names(
        "billing_identities"
    )
    assert "uq_subscriptions_provider_external_ref" in _unique_names("subscriptions")
    assert {
        "ck_entitlements_plan_key",
        "ck_entitlements_status",
        "ck_entitlements_window_order",
    } <= _check_names("entitlements")
    assert "uq_entitlements_user_plan_starts" in _unique_names("entitlements")


def test_ledger_idempotency_key_is_unique() -> None:
    ledger = Base.metadata.tables["ledger_entries"]
    assert ledger.c.idempotency_key.unique is True
    assert {"ck_ledger_entries_action", "ck_ledger_entries_actor"} <= _check_names(
        "ledger_entries"
    )


def test_reconciliation_constraints_present() -> None:
    assert "ck_reconciliation_jobs_window" in _check_names("reconciliation_jobs")
    assert "idx_reconciliation_jobs_status_scheduled" in _index_names("reconciliation_jobs")
    assert "ck_reconciliation_runs_status" in _check_names("reconciliation_runs")
    assert "ck_reconciliation_findings_diff_type" in _check_names("reconciliation_findings")
    assert "idx_reconciliation_findings_open" in _index_names("reconciliation_findings")
