JOB_PROVIDER_SETTLEMENTS = "provider_settlements"
JOB_ENTITLEMENTS_AUDIT = "entitlements_audit"
JOB_TYPES = frozenset({JOB_PROVIDER_SETTLEMENTS, JOB_ENTITLEMENTS_AUDIT})

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_PARTIAL = "partial"
STATUS_CANCELLED = "cancelled"
TERMINAL_STATUSES = frozenset({STATUS_SUCCEEDED, STATUS_FAILED, STATUS_PARTIAL, STATUS_CANCELLED})

# Provider record kinds: a charge and its reversal are compared separately.
KIND_CHARGE = "charge"
KIND_REVERSAL = "reversal"

RECORD_SUCCEEDED = "succeeded"
RECORD_FAILED = "failed"
RECORD_PENDING = "pending"
RECORD_REVERSED = "reversed"

HEAL_INGEST_PROVIDER_RECORD = "ingest_provider_record"
HEAL_REAPPLY_JOURNAL_ENTRY = "reapply_journal_entry"

RESOLVED_BY_RECONCILIATION = "reconciliation"

STAT_KEYS = (
    "scanned_provider",
    "scanned_internal",
    "matched",
    "findings",
    "duplicates",
    "healed",
    "heal_failed",
    "open",
)

# Journal entries are matched over a padded window so records near midnight
# are not reported as missing on one side.
MATCH_WINDOW_PADDING_HOURS = 24
