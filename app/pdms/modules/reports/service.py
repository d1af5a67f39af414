"""
Report requests, background generation and access-checked download.
"""
from __future__ import annotations

import csv
import io
import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.pdms.audit import Provenance, activity_summary, list_events, record_event
from app.pdms.db import session_scope, unit_of_work
from app.pdms.errors import ConflictError, NotFoundError, ValidationError
from app.pdms.rbac import REPORT_DOWNLOAD, REPORT_GENERATE, Actor, ensure_allowed
from app.pdms.storage import Storage, storage_from_config

from .models import Report

if TYPE_CHECKING:
    from flask import Flask

logger = logging.getLogger(__name__)

REPORT_TYPES = ("document_activity", "user_activity", "compliance", "custom")

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def get_report_or_404(s: Session, report_id: str) -> Report:
    r = s.get(Report, report_id)
    if r is None:
        raise NotFoundError("Report not found", details={"report_id": report_id})
    return r


def _parse_dt(value: Any, field: str) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ValidationError(f"{field} must be an ISO datetime", details={"field": field}) from e


def _parse_int(value: Any, field: str) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be an integer", details={"field": field}) from e


def generate_report(
    s: Session,
    *,
    report_type: str,
    title: str,
    actor: Actor,
    enqueue: Callable[[str], None] | None = None,
    parameters: dict[str, Any] | None = None,
    provenance: Provenance | None = None,
) -> Report:
    """
    Record a pending report and dispatch its generation task after commit.

    `enqueue` defaults to the Celery dispatcher.
    """
    ensure_allowed(actor, REPORT_GENERATE, message="Only management or admin can generate reports")
    if report_type not in REPORT_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(REPORT_TYPES)}", details={"field": "type"})
    title = (title or "").strip()
    if not title or len(title) > 200:
        raise ValidationError("title is required (max 200)", details={"field": "title"})
    params = parameters or {}
    # Fail fast on bad filters instead of in the worker.
    _parse_dt(params.get("start_date"), "start_date")
    _parse_dt(params.get("end_date"), "end_date")
    _parse_int(params.get("user_id"), "user_id")
    _parse_int(params.get("document_id"), "document_id")

    with unit_of_work(s):
        r = Report(
            id=f"report_{uuid.uuid4().hex}",
            report_type=report_type,
            title=title,
            parameters_json=json.dumps(params, sort_keys=True) if params else None,
            status=STATUS_PENDING,
            created_by_user_id=actor.id,
        )
        s.add(r)
        s.flush()
        record_event(
            s,
            actor=actor,
            action="REPORT_REQUESTED",
            entity_type="Report",
            entity_id=r.id,
            metadata={"type": report_type, "title": title},
            provenance=provenance,
        )

    if enqueue is None:
        from .tasks import enqueue_report as enqueue
    enqueue(r.id)
    return r


def get_report_status(s: Session, report_id: str, *, actor: Actor) -> Report:
    r = get_report_or_404(s, report_id)
    ensure_allowed(actor, REPORT_DOWNLOAD, is_owner=r.created_by_user_id == actor.id, message="Access denied")
    return r


def download_report(
    s: Session,
    report_id: str,
    *,
    actor: Actor,
    storage: Storage,
    provenance: Provenance | None = None,
) -> tuple[bytes, str]:
    r = get_report_or_404(s, report_id)
    ensure_allowed(actor, REPORT_DOWNLOAD, is_owner=r.created_by_user_id == actor.id, message="Access denied")
    if r.status != STATUS_COMPLETED or not r.storage_key:
        raise ConflictError("Report is not completed", details={"report_id": r.id, "status": r.status})

    data = storage.get_content(r.storage_key)
    with unit_of_work(s):
        record_event(
            s,
            actor=actor,
            action="REPORT_DOWNLOADED",
            entity_type="Report",
            entity_id=r.id,
            provenance=provenance,
        )
    return data, f"{r.report_type}_report_{r.id}.csv"


# ----- Worker side -----

def _rows_to_csv(header: list[str], rows: list[list[Any]]) -> bytes:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(header)
    w.writerows(rows)
    return buf.getvalue().encode("utf-8")


def build_report_content(s: Session, report: Report) -> bytes:
    from app.pdms.modules.document_control.models import Document, DocumentVersion, Draft

    params = json.loads(report.parameters_json) if report.parameters_json else {}
    start = _parse_dt(params.get("start_date"), "start_date")
    end = _parse_dt(params.get("end_date"), "end_date")

    if report.report_type == "document_activity":
        summary = activity_summary(s, start=start, end=end)
        return _rows_to_csv(["action", "count"], [[row["action"], row["count"]] for row in summary])

    if report.report_type == "user_activity":
        summary = activity_summary(s, start=start, end=end, actor_user_id=_parse_int(params.get("user_id"), "user_id"))
        return _rows_to_csv(["action", "count"], [[row["action"], row["count"]] for row in summary])

    if report.report_type == "compliance":
        pending_by_doc = dict(
            s.execute(
                select(Draft.document_id, func.count(Draft.id))
                .where(Draft.status == "pending_approval")
                .group_by(Draft.document_id)
            ).all()
        )
        rows = s.execute(
            select(Document.id, Document.title, Document.classification, Document.status, DocumentVersion.version_number)
            .join(
                DocumentVersion,
                (DocumentVersion.document_id == Document.id) & DocumentVersion.is_official.is_(True),
                isouter=True,
            )
            .order_by(Document.id)
        ).all()
        return _rows_to_csv(
            ["document_id", "title", "classification", "status", "official_version", "pending_approvals"],
            [[r[0], r[1], r[2], r[3], r[4], pending_by_doc.get(r[0], 0)] for r in rows],
        )

    events = list_events(
        s,
        actor_user_id=_parse_int(params.get("user_id"), "user_id"),
        action=params.get("action") or None,
        document_id=_parse_int(params.get("document_id"), "document_id"),
        start=start,
        end=end,
        limit=10000,
    )
    return _rows_to_csv(
        ["created_at", "actor_user_id", "action", "entity_type", "entity_id", "document_id", "reason"],
        [[e.created_at.isoformat(), e.actor_user_id, e.action, e.entity_type, e.entity_id, e.document_id, e.reason] for e in events],
    )


def process_report(app: "Flask", report_id: str) -> None:
    """Worker handler: claim, build, store, finish. Failures are recorded on the row."""
    with session_scope(app) as s:
        res = s.execute(
            update(Report)
            .where(Report.id == report_id, Report.status == STATUS_PENDING)
            .values(status=STATUS_PROCESSING, started_at=datetime.utcnow())
        )
        if res.rowcount != 1:
            logger.info("Report %s already claimed; skipping", report_id)
            return

    logger.info("Report %s processing", report_id)
    try:
        with session_scope(app) as s:
            report = get_report_or_404(s, report_id)
            data = build_report_content(s, report)
            storage = storage_from_config(app.config)
            ref = storage.put_content(data, prefix="reports", filename=f"{report.id}.csv", content_type="text/csv")
            report.storage_key = ref.path
            report.status = STATUS_COMPLETED
            report.completed_at = datetime.utcnow()
    except Exception as e:
        logger.exception("Report %s failed", report_id)
        with session_scope(app) as s:
            s.execute(
                update(Report)
                .where(Report.id == report_id)
                .values(status=STATUS_FAILED, error_message=str(e)[:1000], completed_at=datetime.utcnow())
            )
        return
    logger.info("Report %s completed", report_id)
