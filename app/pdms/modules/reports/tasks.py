"""
Celery wiring for report generation.

Tasks carry only the report id. Report state lives in the `reports` table and
`process_report` claims each task with a conditional UPDATE, so a redelivered
or re-dispatched task never builds the same report twice.

Run a worker with beat (for the recovery sweep) using:

    celery -A app.worker worker --beat --loglevel=INFO
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from celery import Celery
from celery.utils.log import get_task_logger
from sqlalchemy import select, update

from app.pdms.db import session_scope

from .models import Report
from .service import STATUS_PENDING, STATUS_PROCESSING, process_report

if TYPE_CHECKING:
    from flask import Flask

logger = get_task_logger(__name__)

STALE_PROCESSING_AFTER = timedelta(minutes=15)
PENDING_GRACE = timedelta(minutes=1)

celery_app = Celery("pdms")
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    task_ignore_result=True,
    # Unacknowledged until done: a worker that dies mid-build gets its task redelivered.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "recover-stale-reports": {
            "task": "pdms.reports.recover_stale",
            "schedule": 300.0,
        },
    },
)

_flask_app: "Flask | None" = None


def init_celery(app: "Flask") -> Celery:
    """Bind the Celery app to a Flask app's config. Called from `create_app()`."""
    global _flask_app
    broker = app.config["CELERY_BROKER_URL"]
    celery_app.conf.update(
        broker_url=broker,
        task_always_eager=app.config["REPORTS_EAGER"] or broker == "memory://",
    )
    _flask_app = app
    app.extensions["celery"] = celery_app
    return celery_app


def _app() -> "Flask":
    if _flask_app is None:
        raise RuntimeError("Celery used before init_celery(app)")
    return _flask_app


@celery_app.task(name="pdms.reports.generate")
def generate_report_task(report_id: str) -> None:
    process_report(_app(), report_id)


def enqueue_report(report_id: str) -> None:
    if celery_app.conf.task_always_eager:
        generate_report_task(report_id)
    else:
        generate_report_task.delay(report_id)
        logger.info("Report task queued: %s", report_id)


def recover_stale_reports(
    app: "Flask",
    *,
    stale_after: timedelta = STALE_PROCESSING_AFTER,
    pending_grace: timedelta = PENDING_GRACE,
) -> list[str]:
    """
    Re-dispatch reports whose task was lost.

    Rows stuck in `processing` longer than `stale_after` go back to `pending`.
    Every `pending` row older than `pending_grace` is then dispatched again.
    Returns the re-dispatched report ids.
    """
    now = datetime.utcnow()
    with session_scope(app) as s:
        res = s.execute(
            update(Report)
            .where(Report.status == STATUS_PROCESSING, Report.started_at < now - stale_after)
            .values(status=STATUS_PENDING, started_at=None)
        )
        if res.rowcount:
            logger.warning("Reset %s stale processing report(s) to pending", res.rowcount)
        report_ids = list(
            s.scalars(
                select(Report.id)
                .where(Report.status == STATUS_PENDING, Report.created_at <= now - pending_grace)
                .order_by(Report.created_at, Report.id)
            )
        )

    for report_id in report_ids:
        enqueue_report(report_id)
    if report_ids:
        logger.info("Re-dispatched %s pending report(s)", len(report_ids))
    return report_ids


@celery_app.task(name="pdms.reports.recover_stale")
def recover_stale_reports_task() -> None:
    recover_stale_reports(_app())
