"""Celery application for ColdStore.

All long-running lifecycle work runs here rather than in the API process:
tenant scans, auto-approval timer sweeps, archive transfers, retrieval
rehydration polling, the retrieval recovery sweep and the savings snapshot
capture.

The broker and result backend are both Redis (``settings.REDIS_URL``).  Tasks
are routed to a ``coldstore`` queue by default.

Starting a worker::

    celery -A coldstore.celery_app worker --loglevel=info -Q coldstore

Starting the beat scheduler::

    celery -A coldstore.celery_app beat --loglevel=info
"""

from celery import Celery

from coldstore.config import settings

#: Shared Celery application instance.  Import this in task modules.
celery_app = Celery(
    "coldstore",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["coldstore.workers.lifecycle_worker"],
)

celery_app.conf.update(
    # Serialisation
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    task_default_queue="coldstore",
    # A task lost with its worker is redelivered; every task is idempotent.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Result expiry: keep results for 24 h
    result_expires=86400,
)

# ---------------------------------------------------------------------------
# Beat schedule
# ---------------------------------------------------------------------------

#: The scheduler tick runs hourly; each tenant is only due in the hour that
#: matches ``SCAN_TARGET_HOUR`` in its own time zone.
_SCAN_TICK_SECONDS = 3600

celery_app.conf.beat_schedule = {
    "scan-scheduler-tick": {
        "task": "coldstore.workers.lifecycle_worker.scan_scheduler_tick",
        "schedule": _SCAN_TICK_SECONDS,
        "options": {"queue": "coldstore"},
    },
    "approval-timer-sweep": {
        "task": "coldstore.workers.lifecycle_worker.sweep_approval_timers",
        "schedule": settings.APPROVAL_SWEEP_SECONDS,
        "options": {"queue": "coldstore"},
    },
    "retrieval-recovery-sweep": {
        "task": "coldstore.workers.lifecycle_worker.sweep_retrievals",
        "schedule": settings.RETRIEVAL_SWEEP_SECONDS,
        "options": {"queue": "coldstore"},
    },
    "capture-savings-snapshots": {
        "task": "coldstore.workers.lifecycle_worker.capture_savings_snapshots",
        "schedule": settings.SNAPSHOT_CADENCE_SECONDS,
        "options": {"queue": "coldstore"},
    },
}
