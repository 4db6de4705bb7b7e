from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, timezone

from app.billing.constants import (
    ACTION_GRANT,
    ACTION_INVESTIGATE,
    ACTION_REVOKE,
    DIFF_AMOUNT_MISMATCH,
    DIFF_CURRENCY_MISMATCH,
    DIFF_EXTRA_ENTITLEMENT,
    DIFF_MISSING_ENTITLEMENT,
    DIFF_MISSING_INTERNAL_EVENT,
    DIFF_MISSING_PROVIDER_EVENT,
    DIFF_STATUS_MISMATCH,
    EVENT_DISPUTE_OPENED,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_REFUNDED,
    EVENT_PAYMENT_SUCCEEDED,
)
from app.reconciliation.constants import (
    HEAL_INGEST_PROVIDER_RECORD,
    HEAL_REAPPLY_JOURNAL_ENTRY,
    KIND_CHARGE,
    KIND_REVERSAL,
    RECORD_FAILED,
    RECORD_PENDING,
    RECORD_REVERSED,
    RECORD_SUCCEEDED,
    STAT_KEYS,
    STATUS_PARTIAL,
    STATUS_SUCCEEDED,
)
from app.reconciliation.types import (
    DiffFinding,
    DiffResult,
    EntitlementRecord,
    HealAction,
    InternalPaymentRecord,
    ProviderRecord,
)

_INTERNAL_KIND_STATUS: dict[str, tuple[str, str]] = {
    EVENT_PAYMENT_SUCCEEDED: (KIND_CHARGE, RECORD_SUCCEEDED),
    EVENT_PAYMENT_FAILED: (KIND_CHARGE, RECORD_FAILED),
    EVENT_PAYMENT_REFUNDED: (KIND_REVERSAL, RECORD_REVERSED),
    EVENT_DISPUTE_OPENED: (KIND_REVERSAL, RECORD_REVERSED),
}
_SETTLED_STATUSES = frozenset({RECORD_SUCCEEDED, RECORD_REVERSED})


def internal_kind_status(event_type: str) -> tuple[str, str] | None:
    return _INTERNAL_KIND_STATUS.get(event_type)


def window_bounds(date_from: date, date_to: date) -> tuple[datetime, datetime]:
    """Inclusive calendar dates to a half-open UTC instant window."""
    start = datetime.combine(date_from, time.min, tzinfo=timezone.utc)
    end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


def empty_stats() -> dict[str, int]:
    return {key: 0 for key in STAT_KEYS}


def run_status(*, open_findings: int) -> str:
    return STATUS_SUCCEEDED if open_findings == 0 else STATUS_PARTIAL


def _preferred(records: list[InternalPaymentRecord]) -> InternalPaymentRecord:
    # Several journal entries can describe one payment (webhook plus a healed copy).
    return max(
        records,
        key=lambda record: (record.applied, record.processed, -record.journal_entry_id),
    )


def _index_internal(
    records: Iterable[InternalPaymentRecord],
) -> dict[tuple[str, str], list[InternalPaymentRecord]]:
    index: dict[tuple[str, str], list[InternalPaymentRecord]] = {}
    for record in records:
        if record.payment_ref is None:
            continue
        index.setdefault((record.payment_ref, record.kind), []).append(record)
    return index


def _missing_internal(record: ProviderRecord) -> DiffFinding:
    clean = (
        record.payload is not None
        and record.amount_minor is not None
        and record.currency is not None
    )
    return DiffFinding(
        diff_type=DIFF_MISSING_INTERNAL_EVENT,
        suggested_action=ACTION_GRANT if record.kind == KIND_CHARGE else ACTION_REVOKE,
        provider=record.provider,
        provider_event_id=record.event_id or record.record_id,
        auto_healable=clean,
        heal=(
            HealAction(kind=HEAL_INGEST_PROVIDER_RECORD, provider_record=record) if clean else None
        ),
        expected_amount_minor=record.amount_minor,
        expected_currency=record.currency,
        expected_status=record.status,
        details={"payment_ref": record.payment_ref, "kind": record.kind},
    )


def _compare_matched(
    record: ProviderRecord,
    internal: InternalPaymentRecord,
    *,
    tolerance_minor: int,
) -> DiffFinding | None:
    base = {
        "provider": record.provider,
        "provider_event_id": internal.provider_event_id,
        "journal_entry_id": internal.journal_entry_id,
        "suggested_action": ACTION_INVESTIGATE,
        "details": {"payment_ref": record.payment_ref, "kind": record.kind},
    }
    if record.status != RECORD_PENDING and record.status != internal.status:
        return DiffFinding(
            diff_type=DIFF_STATUS_MISMATCH,
            expected_status=record.status,
            actual_status=internal.status,
            **base,
        )
    if record.currency and internal.currency and record.currency != internal.currency:
        return DiffFinding(
            diff_type=DIFF_CURRENCY_MISMATCH,
            expected_currency=record.currency,
            actual_currency=internal.currency,
            expected_amount_minor=record.amount_minor,
            actual_amount_minor=internal.amount_minor,
            **base,
        )
    if (
        record.amount_minor is not None
        and internal.amount_minor is not None
        and abs(record.amount_minor - internal.amount_minor) > tolerance_minor
    ):
        return DiffFinding(
            diff_type=DIFF_AMOUNT_MISMATCH,
            expected_amount_minor=record.amount_minor,
            actual_amount_minor=internal.amount_minor,
            expected_currency=record.currency,
            actual_currency=internal.currency,
            **base,
        )
    return None


def diff_provider_settlements(
    *,
    provider_records: list[ProviderRecord],
    internal_records: list[InternalPaymentRecord],
    window_start: datetime,
    window_end: datetime,
    tolerance_minor: int = 0,
) -> DiffResult:
    """Compare the provider's record of a window against the journal, keyed by payment.

    ``internal_records`` may cover a wider window than ``provider_records``; internal
    records are only reported missing on the provider side when they fall inside
    ``[window_start, window_end)``.
    """
    index = _index_internal(internal_records)
    result = DiffResult(
        findings=[],
        scanned_provider=len(provider_records),
        scanned_internal=len(internal_records),
    )
    seen: set[tuple[str, str]] = set()

    for record in provider_records:
        key = (record.payment_ref, record.kind)
        candidates = index.get(key)
        if not candidates:
            if record.status in _SETTLED_STATUSES:
                result.findings.append(_missing_internal(record))
            continue

        seen.add(key)
        finding = _compare_matched(record, _preferred(candidates), tolerance_minor=tolerance_minor)
        if finding is None:
            result.matched += 1
        else:
            result.findings.append(finding)

    for key, candidates in sorted(index.items()):
        if key in seen:
            continue
        internal = _preferred(candidates)
        if internal.status not in _SETTLED_STATUSES:
            continue
        if not window_start <= internal.occurred_at < window_end:
            continue
        result.findings.append(
            DiffFinding(
                diff_type=DIFF_MISSING_PROVIDER_EVENT,
                suggested_action=ACTION_INVESTIGATE,
                provider=internal.provider,
                provider_event_id=internal.provider_event_id,
                journal_entry_id=internal.journal_entry_id,
                actual_amount_minor=internal.amount_minor,
                actual_currency=internal.currency,
                actual_status=internal.status,
                details={"payment_ref": internal.payment_ref, "kind": internal.kind},
            )
        )
    return result


def diff_entitlements_audit(
    *,
    internal_records: list[InternalPaymentRecord],
    entitlements: list[EntitlementRecord],
) -> DiffResult:
    """Compare processed journal entries against the entitlements they should have produced."""
    result = DiffResult(
        findings=[],
        scanned_internal=len(internal_records) + len(entitlements),
    )
    index = _index_internal(internal_records)

    for (payment_ref, kind), candidates in sorted(index.items()):
        internal = _preferred(candidates)
        if not internal.processed:
            continue
        base = {
            "provider": internal.provider,
            "provider_event_id": internal.provider_event_id,
            "journal_entry_id": internal.journal_entry_id,
            "auto_healable": True,
            "heal": HealAction(
                kind=HEAL_REAPPLY_JOURNAL_ENTRY,
                journal_entry_id=internal.journal_entry_id,
            ),
        }

        if kind == KIND_CHARGE and internal.status == RECORD_SUCCEEDED:
            reversal = index.get((payment_ref, KIND_REVERSAL))
            if reversal is None and not internal.applied and not internal.funded_entitlement_ids:
                result.findings.append(
                    DiffFinding(
                        diff_type=DIFF_MISSING_ENTITLEMENT,
                        suggested_action=ACTION_GRANT,
                        details={"payment_ref": payment_ref, "event_type": internal.event_type},
                        **base,
                    )
                )
                continue
        elif kind == KIND_REVERSAL and internal.live_entitlement_ids:
            result.findings.append(
                DiffFinding(
                    diff_type=DIFF_EXTRA_ENTITLEMENT,
                    suggested_action=ACTION_REVOKE,
                    entitlement_id=internal.live_entitlement_ids[0],
                    expected_status="revoked",
                    actual_status="active",
                    details={
                        "payment_ref": payment_ref,
                        "event_type": internal.event_type,
                        "entitlement_ids": [str(value) for value in internal.live_entitlement_ids],
                    },
                    **base,
                )
            )
            continue
        result.matched += 1

    for entitlement in entitlements:
        if entitlement.ledger_entries > 0:
            result.matched += 1
            continue
        result.findings.append(
            DiffFinding(
                diff_type=DIFF_STATUS_MISMATCH,
                suggested_action=ACTION_INVESTIGATE,
                provider=None,
                provider_event_id=None,
                user_id=entitlement.user_id,
                entitlement_id=entitlement.entitlement_id,
                actual_status=entitlement.status,
                details={"reason": "entitlement_without_ledger", "source": entitlement.source},
            )
        )
    return result
