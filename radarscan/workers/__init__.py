"""RadarScan Celery worker package.

Modules
-------
session_worker
    The :class:`Scheduler` contract, the task that runs one
    :meth:`~radarscan.core.controller.SessionController.advance` step and
    re-enqueues itself, the per-session Redis lease that keeps one task chain
    per session, and the periodic sweep of idle active sessions.
email_worker
    Report email delivery task.
"""
