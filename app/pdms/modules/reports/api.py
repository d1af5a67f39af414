from __future__ import annotations

from flask import Blueprint, Response, current_app, g, request

from app.pdms.audit import provenance_from_request
from app.pdms.db import db_session
from app.pdms.errors import ValidationError
from app.pdms.rbac import REVIEWER_ROLES, require_role
from app.pdms.storage import storage_from_config

from . import service
from .models import Report

bp = Blueprint("reports", __name__)


def _report_dict(r: Report) -> dict:
    return {
        "task_id": r.id,
        "type": r.report_type,
        "title": r.title,
        "status": r.status,
        "error": r.error_message,
        "created_by_user_id": r.created_by_user_id,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "started_at": r.started_at.isoformat() if r.started_at else None,
        "completed_at": r.completed_at.isoformat() if r.completed_at else None,
    }


@bp.post("/reports")
@require_role(*REVIEWER_ROLES)
def generate_report():
    s = db_session()
    payload = request.get_json(silent=True) or {}
    parameters = payload.get("parameters") or {}
    if not isinstance(parameters, dict):
        raise ValidationError("parameters must be an object", details={"field": "parameters"})
    r = service.generate_report(
        s,
        report_type=(payload.get("type") or "").strip(),
        title=payload.get("title") or "",
        parameters=parameters,
        actor=g.current_actor,
        provenance=provenance_from_request(),
    )
    return {"ok": True, "data": {"task_id": r.id, "status": r.status}, "message": "Report generation started"}, 202


@bp.get("/reports/<report_id>/status")
@require_role()
def report_status(report_id: str):
    s = db_session()
    r = service.get_report_status(s, report_id, actor=g.current_actor)
    return {"ok": True, "data": _report_dict(r)}


@bp.get("/reports/<report_id>/download")
@require_role()
def download_report(report_id: str):
    s = db_session()
    data, filename = service.download_report(
        s,
        report_id,
        actor=g.current_actor,
        storage=storage_from_config(current_app.config),
        provenance=provenance_from_request(),
    )
    return Response(
        data,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
