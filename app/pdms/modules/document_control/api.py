"""
JSON endpoints for documents, versions, drafts and merge requests.

Handlers only parse input, call the service layer and project the result;
service errors propagate to the app-level handler that maps them to HTTP codes.
"""
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request, send_file

from app.pdms.audit import list_events, provenance_from_request, record_event
from app.pdms.db import db_session, unit_of_work
from app.pdms.errors import ValidationError
from app.pdms.rbac import AUDIT_VIEW, DOCUMENT_READ, REVIEWER_ROLES, Actor, ensure_allowed, require_role
from app.pdms.storage import ContentRef, storage_from_config

from . import documents, drafts, merge_requests, versions
from .projections import document_views, draft_views, merge_request_views, version_views
from .service import parse_page, sanitize_upload_filename

bp = Blueprint("doc_control", __name__)


def _actor() -> Actor:
    a = getattr(g, "current_actor", None)
    if a is None:
        # require_role runs first; keep this strict anyway.
        raise RuntimeError("No current actor")
    return a


def _payload() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


def _int_arg(name: str, value: object | None = None) -> int | None:
    raw = request.args.get(name) if value is None else value
    if raw in (None, ""):
        return None
    try:
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be an integer", details={"field": name}) from e


def _page():
    return parse_page(request.args.get("limit"), request.args.get("offset"))


def _upload(prefix: str) -> ContentRef | None:
    f = request.files.get("file")
    if not f or not f.filename:
        return None
    filename = sanitize_upload_filename(f.filename)
    content_type = (f.mimetype or "application/octet-stream").strip()
    storage = storage_from_config(current_app.config)
    return storage.put_content(f.read(), prefix=prefix, filename=filename, content_type=content_type)


def _ok(data, status: int = 200, **extra):
    body = {"ok": True, "data": data}
    body.update(extra)
    return jsonify(body), status


# ----- Documents -----

@bp.get("/documents")
@require_role()
def list_documents():
    s = db_session()
    docs = documents.list_documents(
        s,
        actor=_actor(),
        classification=request.args.get("classification") or None,
        owner_id=_int_arg("owner_id"),
        status=request.args.get("status") or documents.STATUS_ACTIVE,
        search=request.args.get("search") or None,
        page=_page(),
    )
    return _ok([v.as_dict() for v in document_views(s, docs)])


@bp.get("/documents/search")
@require_role()
def search_documents():
    s = db_session()
    docs = documents.search_documents(
        s, request.args.get("q") or "", actor=_actor(), page=_page(), provenance=provenance_from_request()
    )
    return _ok([v.as_dict() for v in document_views(s, docs)])


@bp.post("/documents")
@require_role()
def create_document():
    s = db_session()
    content = _upload("documents")
    if content is None:
        raise ValidationError("A file upload is required", details={"field": "file"})
    payload = request.form
    d = documents.create_document(
        s,
        title=payload.get("title") or "",
        description=payload.get("description"),
        file_type=payload.get("file_type") or (request.files["file"].mimetype or ""),
        classification=payload.get("classification") or "",
        content=content,
        actor=_actor(),
        provenance=provenance_from_request(),
    )
    return _ok(document_views(s, [d])[0].as_dict(), 201)


@bp.get("/documents/<int:doc_id>")
@require_role()
def get_document(doc_id: int):
    s = db_session()
    d = documents.get_document(s, doc_id, actor=_actor(), provenance=provenance_from_request())
    return _ok(document_views(s, [d])[0].as_dict())


@bp.patch("/documents/<int:doc_id>")
@require_role()
def update_document(doc_id: int):
    s = db_session()
    payload = _payload()
    patch = documents.DocumentPatch(
        title=payload.get("title"),
        description=payload.get("description"),
        classification=payload.get("classification"),
    )
    d = documents.update_document(s, doc_id, patch, actor=_actor(), provenance=provenance_from_request())
    return _ok(document_views(s, [d])[0].as_dict())


@bp.post("/documents/<int:doc_id>/archive")
@require_role("admin")
def archive_document(doc_id: int):
    s = db_session()
    d = documents.archive_document(
        s, doc_id, reason=_payload().get("reason") or "", actor=_actor(), provenance=provenance_from_request()
    )
    return _ok(document_views(s, [d])[0].as_dict())


# ----- Versions -----

def _readable_document(s, doc_id: int):
    d = documents.get_document_or_404(s, doc_id)
    actor = _actor()
    ensure_allowed(
        actor,
        DOCUMENT_READ,
        is_owner=d.owner_user_id == actor.id,
        classification=d.classification,
        message="Access denied for this document",
    )
    return d


@bp.get("/documents/<int:doc_id>/versions")
@require_role()
def list_versions(doc_id: int):
    s = db_session()
    _readable_document(s, doc_id)
    return _ok([v.as_dict() for v in version_views(s, versions.list_versions(s, doc_id))])


@bp.get("/documents/<int:doc_id>/versions/official")
@require_role()
def official_version(doc_id: int):
    s = db_session()
    _readable_document(s, doc_id)
    return _ok(version_views(s, [versions.get_official_version(s, doc_id)])[0].as_dict())


@bp.get("/documents/<int:doc_id>/versions/<int:version_number>")
@require_role()
def get_version(doc_id: int, version_number: int):
    s = db_session()
    _readable_document(s, doc_id)
    return _ok(version_views(s, [versions.get_version(s, doc_id, version_number)])[0].as_dict())


@bp.get("/documents/<int:doc_id>/versions/<int:version_number>/download")
@require_role()
def download_version(doc_id: int, version_number: int):
    s = db_session()
    d = _readable_document(s, doc_id)
    v = versions.get_version(s, doc_id, version_number)

    storage = storage_from_config(current_app.config)
    fobj = storage.open(v.file_path)

    with unit_of_work(s):
        record_event(
            s,
            actor=_actor(),
            action="DOCUMENT_VERSION_DOWNLOADED",
            entity_type="DocumentVersion",
            entity_id=str(v.id),
            document_id=d.id,
            metadata={"version_number": v.version_number, "checksum": v.checksum},
        )

    return send_file(
        fobj,
        mimetype="application/octet-stream",
        as_attachment=True,
        download_name=v.file_path.rsplit("/", 1)[-1],
        max_age=0,
    )


@bp.get("/documents/<int:doc_id>/compare")
@require_role()
def compare_versions(doc_id: int):
    s = db_session()
    _readable_document(s, doc_id)
    from_number = _int_arg("from")
    to_number = _int_arg("to")
    if from_number is None or to_number is None:
        raise ValidationError("Both 'from' and 'to' version parameters are required")
    cmp = versions.compare_versions(s, doc_id, from_number, to_number)
    old, new = version_views(s, [cmp["from"], cmp["to"]])
    return _ok(
        {
            "document_id": doc_id,
            "from": old.as_dict(),
            "to": new.as_dict(),
            "content_changed": cmp["content_changed"],
            "size_delta": cmp["size_delta"],
        }
    )


# ----- Drafts -----

@bp.get("/drafts")
@require_role()
def list_drafts():
    s = db_session()
    rows = drafts.list_drafts(
        s,
        actor=_actor(),
        document_id=_int_arg("document_id"),
        creator_id=_int_arg("creator_id"),
        status=request.args.get("status") or None,
        page=_page(),
    )
    return _ok([v.as_dict() for v in draft_views(s, rows)])


@bp.post("/drafts")
@require_role()
def create_draft():
    s = db_session()
    payload = _payload()
    document_id = _int_arg("document_id", payload.get("document_id"))
    base_version_id = _int_arg("base_version_id", payload.get("base_version_id"))
    if document_id is None or base_version_id is None:
        raise ValidationError("document_id and base_version_id are required")
    d = drafts.create_draft(
        s,
        document_id=document_id,
        name=payload.get("name") or "",
        description=payload.get("description"),
        base_version_id=base_version_id,
        content=_upload("drafts"),
        actor=_actor(),
        provenance=provenance_from_request(),
    )
    return _ok(draft_views(s, [d])[0].as_dict(), 201)


@bp.get("/drafts/<int:draft_id>")
@require_role()
def get_draft(draft_id: int):
    s = db_session()
    d = drafts.get_draft(s, draft_id)
    _readable_document(s, d.document_id)
    return _ok(draft_views(s, [d])[0].as_dict())


@bp.patch("/drafts/<int:draft_id>")
@require_role()
def update_draft(draft_id: int):
    s = db_session()
    payload = _payload()
    patch = drafts.DraftPatch(
        name=payload.get("name"),
        description=payload.get("description"),
        content=_upload("drafts"),
    )
    d = drafts.update_draft(s, draft_id, patch, actor=_actor(), provenance=provenance_from_request())
    return _ok(draft_views(s, [d])[0].as_dict())


@bp.delete("/drafts/<int:draft_id>")
@require_role()
def delete_draft(draft_id: int):
    s = db_session()
    drafts.delete_draft(s, draft_id, actor=_actor(), provenance=provenance_from_request())
    return _ok({"id": draft_id})


# ----- Merge requests -----

@bp.get("/merge-requests")
@require_role()
def list_merge_requests():
    s = db_session()
    rows = merge_requests.list_merge_requests(
        s,
        actor=_actor(),
        status=request.args.get("status") or None,
        approver_id=_int_arg("approver_id"),
        draft_id=_int_arg("draft_id"),
        page=_page(),
    )
    return _ok([v.as_dict() for v in merge_request_views(s, rows)])


@bp.post("/merge-requests")
@require_role()
def submit_merge_request():
    s = db_session()
    payload = _payload()
    draft_id = _int_arg("draft_id", payload.get("draft_id"))
    approver_id = _int_arg("approver_id", payload.get("approver_id"))
    if draft_id is None or approver_id is None:
        raise ValidationError("draft_id and approver_id are required")
    mr = merge_requests.submit(
        s,
        draft_id=draft_id,
        approver_id=approver_id,
        summary=payload.get("summary") or "",
        actor=_actor(),
        provenance=provenance_from_request(),
    )
    return _ok(merge_request_views(s, [mr])[0].as_dict(), 201)


@bp.get("/merge-requests/<int:mr_id>")
@require_role()
def get_merge_request(mr_id: int):
    s = db_session()
    mr = merge_requests.get_merge_request(s, mr_id)
    _readable_document(s, mr.draft.document_id)
    return _ok(merge_request_views(s, [mr])[0].as_dict())


@bp.post("/merge-requests/<int:mr_id>/approve")
@require_role(*REVIEWER_ROLES)
def approve_merge_request(mr_id: int):
    s = db_session()
    mr = merge_requests.approve(s, mr_id, actor=_actor(), provenance=provenance_from_request())
    return _ok(merge_request_views(s, [mr])[0].as_dict(), message="Merge request approved successfully")


@bp.post("/merge-requests/<int:mr_id>/reject")
@require_role(*REVIEWER_ROLES)
def reject_merge_request(mr_id: int):
    s = db_session()
    mr = merge_requests.reject(
        s,
        mr_id,
        reason=_payload().get("reason") or "",
        actor=_actor(),
        provenance=provenance_from_request(),
    )
    return _ok(merge_request_views(s, [mr])[0].as_dict(), message="Merge request rejected")


# ----- Audit trail -----

@bp.get("/audit-logs")
@require_role(*REVIEWER_ROLES)
def audit_logs():
    s = db_session()
    ensure_allowed(_actor(), AUDIT_VIEW)
    page = _page()
    rows = list_events(
        s,
        actor_user_id=_int_arg("user_id"),
        action=request.args.get("action") or None,
        document_id=_int_arg("document_id"),
        limit=page.limit,
        offset=page.offset,
    )
    return _ok(
        [
            {
                "id": e.id,
                "created_at": e.created_at.isoformat(),
                "actor_user_id": e.actor_user_id,
                "actor_user_email": e.actor_user_email,
                "action": e.action,
                "entity_type": e.entity_type,
                "entity_id": e.entity_id,
                "document_id": e.document_id,
                "draft_id": e.draft_id,
                "merge_request_id": e.merge_request_id,
                "reason": e.reason,
                "metadata_json": e.metadata_json,
                "client_ip": e.client_ip,
            }
            for e in rows
        ]
    )
