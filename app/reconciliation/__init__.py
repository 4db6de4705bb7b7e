from __future__ import annotations

from .findings import list_open_findings, mark_resolved
from .jobs import cancel, enqueue, enqueue_daily, get_job
from .runner import run_due_jobs, run_job


class ReconciliationService:
    enqueue = staticmethod(enqueue)
    enqueue_daily = staticmethod(enqueue_daily)
    run = staticmethod(run_job)
    run_due_jobs = staticmethod(run_due_jobs)
    cancel = staticmethod(cancel)
    get_job = staticmethod(get_job)
    list_open_findings = staticmethod(list_open_findings)
    mark_resolved = staticmethod(mark_resolved)


__all__ = ["ReconciliationService"]
