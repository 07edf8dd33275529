"""Celery application for RadarScan.

Drives scan sessions in the background (one ``advance`` step per task
invocation) and delivers report emails.

The broker and result backend both use Redis (``settings.REDIS_URL``).  All
tasks are routed to the ``radarscan`` queue.

Starting a worker::

    celery -A radarscan.celery_app worker --loglevel=info -Q radarscan

Starting the beat scheduler (stalled session sweep)::

    celery -A radarscan.celery_app beat --loglevel=info
"""

from celery import Celery

from radarscan.config import settings

#: Shared Celery application instance.  Import this in task modules.
celery_app = Celery(
    "radarscan",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "radarscan.workers.session_worker",
        "radarscan.workers.email_worker",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="radarscan",
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Step results are only useful for debugging.
    result_expires=3600,
)

celery_app.conf.beat_schedule = {
    "sweep-active-sessions": {
        "task": "radarscan.workers.session_worker.sweep_active_sessions",
        "schedule": float(settings.SWEEP_INTERVAL_SECONDS),
        "options": {"queue": "radarscan"},
    },
}
