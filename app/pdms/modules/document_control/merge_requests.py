"""
Merge request workflow: the approval state machine that turns a draft into
the next official version of its document.

    pending -> approved   (terminal; promotes the draft)
    pending -> rejected   (terminal; draft returns to in_progress)

Every status flip is a compare-and-swap UPDATE guarded on the expected
current status. Approval additionally runs under the document lock so the
version store sees one promotion per document at a time.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.pdms.audit import Provenance, record_event
from app.pdms.db import unit_of_work
from app.pdms.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.pdms.models import User
from app.pdms.rbac import DRAFT_SUBMIT, MERGE_REQUEST_REVIEW, REVIEWER_ROLES, Actor, ensure_allowed
from app.pdms.storage import ContentRef

from .documents import readable_by
from .drafts import DRAFT_APPROVED, DRAFT_IN_PROGRESS, DRAFT_PENDING_APPROVAL, get_draft
from .models import Document, Draft, MergeRequest
from .service import Page, require_text
from .versions import document_lock, promote

logger = logging.getLogger(__name__)

MR_PENDING = "pending"
MR_APPROVED = "approved"
MR_REJECTED = "rejected"
MR_STATUSES = (MR_PENDING, MR_APPROVED, MR_REJECTED)

STATUS_TRANSITIONS = {
    MR_PENDING: {MR_APPROVED, MR_REJECTED},
    MR_APPROVED: set(),
    MR_REJECTED: set(),
}


def get_merge_request(s: Session, merge_request_id: int) -> MergeRequest:
    mr = s.get(MergeRequest, merge_request_id)
    if mr is None:
        raise NotFoundError("Merge request not found", details={"merge_request_id": merge_request_id})
    return mr


def _pending_request_id(s: Session, draft_id: int) -> int | None:
    return s.scalar(
        select(MergeRequest.id).where(MergeRequest.draft_id == draft_id, MergeRequest.status == MR_PENDING)
    )


def submit(
    s: Session,
    *,
    draft_id: int,
    approver_id: int,
    summary: str,
    actor: Actor,
    provenance: Provenance | None = None,
) -> MergeRequest:
    """Open a merge request for an in-progress draft and freeze the draft for review."""
    summary = require_text(summary, "summary", max_len=1000)
    draft = get_draft(s, draft_id)
    ensure_allowed(
        actor,
        DRAFT_SUBMIT,
        is_owner=draft.creator_user_id == actor.id,
        message="Only the draft creator or admin can submit this draft",
    )

    approver = s.get(User, approver_id)
    if approver is None:
        raise NotFoundError("Approver not found", details={"approver_id": approver_id})
    if not approver.is_active or approver.role not in REVIEWER_ROLES:
        raise ValidationError(
            "Approver must be an active management or admin user",
            details={"approver_id": approver_id},
        )

    if draft.status != DRAFT_IN_PROGRESS:
        raise ConflictError(
            f"Only in-progress drafts can be submitted (draft is {draft.status})",
            details={"draft_id": draft.id, "status": draft.status},
        )
    existing = _pending_request_id(s, draft.id)
    if existing is not None:
        raise ConflictError(
            "Draft already has a pending merge request",
            details={"draft_id": draft.id, "merge_request_id": existing},
        )

    with unit_of_work(s):
        res = s.execute(
            update(Draft)
            .where(Draft.id == draft.id, Draft.status == DRAFT_IN_PROGRESS)
            .values(status=DRAFT_PENDING_APPROVAL, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConflictError("Draft was submitted concurrently", details={"draft_id": draft.id})

        mr = MergeRequest(
            draft_id=draft.id,
            approver_user_id=approver.id,
            requested_by_user_id=actor.id,
            summary=summary,
            status=MR_PENDING,
        )
        try:
            with s.begin_nested():
                s.add(mr)
        except IntegrityError as e:
            raise ConflictError("Draft already has a pending merge request", details={"draft_id": draft.id}) from e

        record_event(
            s,
            actor=actor,
            action="MERGE_REQUEST_CREATED",
            entity_type="MergeRequest",
            entity_id=str(mr.id),
            document_id=draft.document_id,
            draft_id=draft.id,
            merge_request_id=mr.id,
            metadata={"approver_id": approver.id, "summary": summary},
            provenance=provenance,
        )
    s.refresh(draft)
    return mr


def _ensure_reviewer(actor: Actor, mr: MergeRequest) -> None:
    ensure_allowed(actor, MERGE_REQUEST_REVIEW, message="Only management or admin can review merge requests")
    if not actor.is_admin and mr.approver_user_id != actor.id:
        raise AuthorizationError(
            "Only the designated approver can review this merge request",
            details={"merge_request_id": mr.id},
        )


def _ensure_pending(mr: MergeRequest) -> None:
    if mr.status != MR_PENDING:
        raise AuthorizationError(
            "Merge request is not in pending status",
            details={"merge_request_id": mr.id, "status": mr.status},
        )


def _claim(s: Session, mr: MergeRequest, new_status: str, **values) -> None:
    """CAS `pending -> new_status`; losing the race surfaces like any non-pending request."""
    if new_status not in STATUS_TRANSITIONS[MR_PENDING]:
        raise ValueError(f"Invalid transition: {MR_PENDING} -> {new_status}")
    res = s.execute(
        update(MergeRequest)
        .where(MergeRequest.id == mr.id, MergeRequest.status == MR_PENDING)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        logger.warning("Merge request %s already decided; %s refused", mr.id, new_status)
        raise AuthorizationError(
            "Merge request is not in pending status",
            details={"merge_request_id": mr.id},
        )


def approve(
    s: Session,
    merge_request_id: int,
    *,
    actor: Actor,
    provenance: Provenance | None = None,
) -> MergeRequest:
    """
    Approve a pending request and promote its draft.

    Status flip, promotion, draft freeze and audit commit together; if the
    promotion fails the request is still pending afterwards.
    """
    mr = get_merge_request(s, merge_request_id)
    _ensure_reviewer(actor, mr)
    _ensure_pending(mr)
    document_id = s.scalar(select(Draft.document_id).where(Draft.id == mr.draft_id))
    if document_id is None:
        raise NotFoundError("Draft not found", details={"draft_id": mr.draft_id})

    with document_lock(s, document_id) as doc, unit_of_work(s):
        now = datetime.utcnow()
        _claim(s, mr, MR_APPROVED, approved_at=now)

        draft = s.execute(
            select(Draft).where(Draft.id == mr.draft_id).execution_options(populate_existing=True)
        ).scalar_one()
        version = promote(
            s,
            document_id,
            ContentRef(path=draft.file_path, size=draft.file_size, checksum=draft.checksum),
            created_by=actor.id,
            changes_summary=mr.summary,
        )

        res = s.execute(
            update(Draft)
            .where(Draft.id == draft.id, Draft.status == DRAFT_PENDING_APPROVAL)
            .values(status=DRAFT_APPROVED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConflictError("Draft is no longer awaiting approval", details={"draft_id": draft.id})
        s.execute(
            update(MergeRequest)
            .where(MergeRequest.id == mr.id)
            .values(resulting_version_id=version.id)
            .execution_options(synchronize_session=False)
        )
        doc.updated_at = now

        record_event(
            s,
            actor=actor,
            action="MERGE_REQUEST_APPROVED",
            entity_type="MergeRequest",
            entity_id=str(mr.id),
            document_id=document_id,
            draft_id=draft.id,
            merge_request_id=mr.id,
            metadata={
                "approver": actor.name,
                "version_id": version.id,
                "version_number": version.version_number,
            },
            provenance=provenance,
        )

    s.refresh(mr)
    s.refresh(draft)
    return mr


def reject(
    s: Session,
    merge_request_id: int,
    *,
    reason: str,
    actor: Actor,
    provenance: Provenance | None = None,
) -> MergeRequest:
    """
    Reject a pending request. The draft goes back to in_progress so its creator
    can revise and resubmit, to this or any other approver.
    """
    reason = require_text(reason, "reason", max_len=1000)
    mr = get_merge_request(s, merge_request_id)
    _ensure_reviewer(actor, mr)
    _ensure_pending(mr)

    with unit_of_work(s):
        now = datetime.utcnow()
        _claim(s, mr, MR_REJECTED, rejected_at=now, rejection_reason=reason)

        s.execute(
            update(Draft)
            .where(Draft.id == mr.draft_id, Draft.status == DRAFT_PENDING_APPROVAL)
            .values(status=DRAFT_IN_PROGRESS, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        document_id = s.scalar(select(Draft.document_id).where(Draft.id == mr.draft_id))

        record_event(
            s,
            actor=actor,
            action="MERGE_REQUEST_REJECTED",
            entity_type="MergeRequest",
            entity_id=str(mr.id),
            document_id=document_id,
            draft_id=mr.draft_id,
            merge_request_id=mr.id,
            reason=reason,
            metadata={"approver": actor.name, "reason": reason},
            provenance=provenance,
        )

    s.refresh(mr)
    s.refresh(mr.draft)
    return mr


def list_merge_requests(
    s: Session,
    *,
    actor: Actor,
    status: str | None = None,
    approver_id: int | None = None,
    draft_id: int | None = None,
    page: Page = Page(),
) -> list[MergeRequest]:
    stmt = readable_by(
        select(MergeRequest)
        .join(Draft, Draft.id == MergeRequest.draft_id)
        .join(Document, Document.id == Draft.document_id),
        actor,
    )
    if status:
        if status not in MR_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(MR_STATUSES)}")
        stmt = stmt.where(MergeRequest.status == status)
    if approver_id is not None:
        stmt = stmt.where(MergeRequest.approver_user_id == approver_id)
    if draft_id is not None:
        stmt = stmt.where(MergeRequest.draft_id == draft_id)
    stmt = stmt.order_by(MergeRequest.created_at.desc(), MergeRequest.id.desc()).limit(page.limit).offset(page.offset)
    return list(s.scalars(stmt))
