"""
Draft manager: user-private working copies branched from a document version.

Status writes are conditional UPDATEs on the current status, so an edit can
never land on a draft that a concurrent submission or approval just froze.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from app.pdms.audit import Provenance, record_event
from app.pdms.db import unit_of_work
from app.pdms.errors import ConflictError, NotFoundError, ValidationError
from app.pdms.rbac import DOCUMENT_READ, DRAFT_CREATE, DRAFT_DELETE, DRAFT_EDIT, Actor, ensure_allowed
from app.pdms.storage import ContentRef

from .documents import STATUS_ARCHIVED, get_document_or_404, readable_by
from .models import Document, DocumentVersion, Draft, MergeRequest
from .service import Page, optional_text, require_text

DRAFT_IN_PROGRESS = "in_progress"
DRAFT_PENDING_APPROVAL = "pending_approval"
DRAFT_APPROVED = "approved"
DRAFT_REJECTED = "rejected"
DRAFT_STATUSES = (DRAFT_IN_PROGRESS, DRAFT_PENDING_APPROVAL, DRAFT_APPROVED, DRAFT_REJECTED)

# Content under review or already official is frozen.
EDITABLE_STATUSES = (DRAFT_IN_PROGRESS, DRAFT_REJECTED)
DELETABLE_STATUSES = (DRAFT_IN_PROGRESS, DRAFT_REJECTED)


@dataclass(frozen=True)
class DraftPatch:
    """Caller-editable draft fields. Status and ownership are system-managed."""

    name: str | None = None
    description: str | None = None
    content: ContentRef | None = None


def get_draft(s: Session, draft_id: int) -> Draft:
    d = s.get(Draft, draft_id)
    if d is None:
        raise NotFoundError("Draft not found", details={"draft_id": draft_id})
    return d


def create_draft(
    s: Session,
    *,
    document_id: int,
    name: str,
    base_version_id: int,
    actor: Actor,
    description: str | None = None,
    content: ContentRef | None = None,
    provenance: Provenance | None = None,
) -> Draft:
    ensure_allowed(actor, DRAFT_CREATE)
    name = require_text(name, "name", max_len=200)
    description = optional_text(description, "description", max_len=1000)

    doc = get_document_or_404(s, document_id)
    ensure_allowed(
        actor,
        DOCUMENT_READ,
        is_owner=doc.owner_user_id == actor.id,
        classification=doc.classification,
        message="Access denied for this document",
    )
    if doc.status == STATUS_ARCHIVED:
        raise ConflictError("Cannot draft against an archived document", details={"document_id": doc.id})

    base = s.get(DocumentVersion, base_version_id)
    if base is None or base.document_id != doc.id:
        raise ValidationError(
            "base_version_id is not a version of this document",
            details={"document_id": doc.id, "base_version_id": base_version_id},
        )

    if content is None:
        # Start from the base snapshot until the author uploads new content.
        content = ContentRef(path=base.file_path, size=base.file_size, checksum=base.checksum)

    with unit_of_work(s):
        now = datetime.utcnow()
        d = Draft(
            document_id=doc.id,
            base_version_id=base.id,
            name=name,
            description=description,
            status=DRAFT_IN_PROGRESS,
            file_path=content.path,
            file_size=content.size,
            checksum=content.checksum,
            creator_user_id=actor.id,
            created_at=now,
            updated_at=now,
        )
        s.add(d)
        s.flush()

        record_event(
            s,
            actor=actor,
            action="DRAFT_CREATED",
            entity_type="Draft",
            entity_id=str(d.id),
            document_id=doc.id,
            draft_id=d.id,
            metadata={"name": d.name, "base_version_id": base.id, "base_version_number": base.version_number},
            provenance=provenance,
        )
    return d


def _patch_values(patch: DraftPatch) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if patch.name is not None:
        values["name"] = require_text(patch.name, "name", max_len=200)
    if patch.description is not None:
        values["description"] = optional_text(patch.description, "description", max_len=1000)
    if patch.content is not None:
        values["file_path"] = patch.content.path
        values["file_size"] = patch.content.size
        values["checksum"] = patch.content.checksum
    return values


def update_draft(
    s: Session,
    draft_id: int,
    patch: DraftPatch,
    *,
    actor: Actor,
    provenance: Provenance | None = None,
) -> Draft:
    d = get_draft(s, draft_id)
    ensure_allowed(
        actor,
        DRAFT_EDIT,
        is_owner=d.creator_user_id == actor.id,
        message="Only the draft creator or admin can update this draft",
    )
    values = _patch_values(patch)
    if not values:
        raise ValidationError("No draft fields supplied", details={"draft_id": d.id})

    with unit_of_work(s):
        res = s.execute(
            update(Draft)
            .where(Draft.id == d.id, Draft.status.in_(EDITABLE_STATUSES))
            .values(**values, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            current = s.scalar(select(Draft.status).where(Draft.id == d.id))
            raise ConflictError(
                f"Draft cannot be edited while {current}",
                details={"draft_id": d.id, "status": current},
            )

        record_event(
            s,
            actor=actor,
            action="DRAFT_UPDATED",
            entity_type="Draft",
            entity_id=str(d.id),
            document_id=d.document_id,
            draft_id=d.id,
            metadata={"fields": sorted(values)},
            provenance=provenance,
        )
    s.refresh(d)
    return d


def delete_draft(
    s: Session,
    draft_id: int,
    *,
    actor: Actor,
    provenance: Provenance | None = None,
) -> None:
    """
    Remove a draft and its closed merge requests.

    A draft awaiting approval is not deleted: its merge request must be
    rejected first, so a reviewer never loses a request mid-review. Approved
    drafts are part of the official history and stay.
    """
    d = get_draft(s, draft_id)
    ensure_allowed(
        actor,
        DRAFT_DELETE,
        is_owner=d.creator_user_id == actor.id,
        message="Only the draft creator or admin can delete this draft",
    )
    draft_name, document_id = d.name, d.document_id

    with unit_of_work(s):
        res = s.execute(
            delete(Draft)
            .where(Draft.id == draft_id, Draft.status.in_(DELETABLE_STATUSES))
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            current = s.scalar(select(Draft.status).where(Draft.id == draft_id))
            raise ConflictError(
                f"Draft cannot be deleted while {current}",
                details={"draft_id": draft_id, "status": current},
            )
        s.execute(
            delete(MergeRequest)
            .where(MergeRequest.draft_id == draft_id)
            .execution_options(synchronize_session=False)
        )

        record_event(
            s,
            actor=actor,
            action="DRAFT_DELETED",
            entity_type="Draft",
            entity_id=str(draft_id),
            document_id=document_id,
            draft_id=draft_id,
            metadata={"name": draft_name},
            provenance=provenance,
        )
    s.expunge(d)


def list_drafts(
    s: Session,
    *,
    actor: Actor,
    document_id: int | None = None,
    creator_id: int | None = None,
    status: str | None = None,
    page: Page = Page(),
) -> list[Draft]:
    """Drafts of documents `actor` may read, newest activity first."""
    stmt = readable_by(select(Draft).join(Document, Document.id == Draft.document_id), actor)
    if document_id is not None:
        stmt = stmt.where(Draft.document_id == document_id)
    if creator_id is not None:
        stmt = stmt.where(Draft.creator_user_id == creator_id)
    if status:
        if status not in DRAFT_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(DRAFT_STATUSES)}")
        stmt = stmt.where(Draft.status == status)
    stmt = stmt.order_by(Draft.updated_at.desc(), Draft.id.desc()).limit(page.limit).offset(page.offset)
    return list(s.scalars(stmt))
