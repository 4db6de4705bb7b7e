from app.workers.tasks.entitlements import (
    activate_scheduled_entitlements,
    expire_ended_entitlements,
)
from app.workers.tasks.payment_events import check_journal_backlog, replay_unprocessed_events
from app.workers.tasks.reconciliation import (
    enqueue_daily_reconciliation,
    run_due_reconciliation_jobs,
)

__all__ = [
    "activate_scheduled_entitlements",
    "check_journal_backlog",
    "enqueue_daily_reconciliation",
    "expire_ended_entitlements",
    "replay_unprocessed_events",
    "run_due_reconciliation_jobs",
]
