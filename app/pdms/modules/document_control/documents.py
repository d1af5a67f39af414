"""
Document records: creation (with version 1), metadata edits, soft archive, listing.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.pdms.audit import Provenance, record_event
from app.pdms.db import unit_of_work
from app.pdms.errors import ConflictError, NotFoundError, ValidationError
from app.pdms.rbac import (
    DOCUMENT_ADMIN,
    DOCUMENT_CREATE,
    DOCUMENT_READ,
    DOCUMENT_UPDATE,
    REVIEWER_ROLES,
    Actor,
    ensure_allowed,
)
from app.pdms.storage import ContentRef

from .models import Document, Draft
from .service import Page, optional_text, require_text, validate_classification
from .versions import create_initial_version

STATUS_ACTIVE = "active"
STATUS_ARCHIVED = "archived"


@dataclass(frozen=True)
class DocumentPatch:
    """Caller-editable document fields. None leaves a field unchanged."""

    title: str | None = None
    description: str | None = None
    classification: str | None = None


def get_document_or_404(s: Session, document_id: int) -> Document:
    d = s.get(Document, document_id)
    if d is None:
        raise NotFoundError("Document not found", details={"document_id": document_id})
    return d


def create_document(
    s: Session,
    *,
    title: str,
    file_type: str,
    classification: str,
    content: ContentRef,
    actor: Actor,
    description: str | None = None,
    provenance: Provenance | None = None,
) -> Document:
    """Create a document and its official version 1 in one transaction."""
    ensure_allowed(actor, DOCUMENT_CREATE)
    title = require_text(title, "title", max_len=200)
    file_type = require_text(file_type, "file_type", max_len=64)
    classification = validate_classification(classification)
    description = optional_text(description, "description", max_len=1000)

    with unit_of_work(s):
        now = datetime.utcnow()
        d = Document(
            title=title,
            description=description,
            classification=classification,
            file_type=file_type,
            owner_user_id=actor.id,
            status=STATUS_ACTIVE,
            created_at=now,
            updated_at=now,
        )
        s.add(d)
        s.flush()

        v = create_initial_version(s, d, content, created_by=actor.id)

        record_event(
            s,
            actor=actor,
            action="DOCUMENT_CREATED",
            entity_type="Document",
            entity_id=str(d.id),
            document_id=d.id,
            metadata={
                "title": d.title,
                "classification": d.classification,
                "file_type": d.file_type,
                "version_id": v.id,
            },
            provenance=provenance,
        )
    return d


def get_document(
    s: Session,
    document_id: int,
    *,
    actor: Actor,
    provenance: Provenance | None = None,
) -> Document:
    d = get_document_or_404(s, document_id)
    ensure_allowed(
        actor,
        DOCUMENT_READ,
        is_owner=d.owner_user_id == actor.id,
        classification=d.classification,
        message="Access denied for this document",
    )
    with unit_of_work(s):
        record_event(
            s,
            actor=actor,
            action="DOCUMENT_VIEWED",
            entity_type="Document",
            entity_id=str(d.id),
            document_id=d.id,
            metadata={"title": d.title},
            provenance=provenance,
        )
    return d


def update_document(
    s: Session,
    document_id: int,
    patch: DocumentPatch,
    *,
    actor: Actor,
    provenance: Provenance | None = None,
) -> Document:
    d = get_document_or_404(s, document_id)
    ensure_allowed(
        actor,
        DOCUMENT_UPDATE,
        is_owner=d.owner_user_id == actor.id,
        message="Only the document owner or admin can update this document",
    )
    if d.status == STATUS_ARCHIVED:
        raise ConflictError("Archived documents cannot be edited", details={"document_id": d.id})
    if patch == DocumentPatch():
        raise ValidationError("No document fields supplied", details={"document_id": d.id})

    changes: dict[str, dict[str, str | None]] = {}
    with unit_of_work(s):
        if patch.title is not None:
            new_title = require_text(patch.title, "title", max_len=200)
            if new_title != d.title:
                changes["title"] = {"old": d.title, "new": new_title}
                d.title = new_title

        if patch.description is not None:
            new_description = optional_text(patch.description, "description", max_len=1000)
            if new_description != d.description:
                changes["description"] = {"old": "...", "new": "..."}  # Don't log full text
                d.description = new_description

        if patch.classification is not None:
            new_classification = validate_classification(patch.classification)
            if new_classification != d.classification:
                changes["classification"] = {"old": d.classification, "new": new_classification}
                d.classification = new_classification

        if changes:
            d.updated_at = datetime.utcnow()
            record_event(
                s,
                actor=actor,
                action="DOCUMENT_UPDATED",
                entity_type="Document",
                entity_id=str(d.id),
                document_id=d.id,
                metadata={"changes": changes},
                provenance=provenance,
            )
    return d


def archive_document(
    s: Session,
    document_id: int,
    *,
    reason: str,
    actor: Actor,
    provenance: Provenance | None = None,
) -> Document:
    """Soft lifecycle end. Blocked while any draft of the document awaits approval."""
    ensure_allowed(actor, DOCUMENT_ADMIN, message="Only admins can archive documents")
    reason = require_text(reason, "reason", max_len=1000)
    d = get_document_or_404(s, document_id)
    if d.status == STATUS_ARCHIVED:
        raise ConflictError("Document is already archived", details={"document_id": d.id})

    pending = s.scalar(
        select(Draft.id).where(Draft.document_id == d.id, Draft.status == "pending_approval").limit(1)
    )
    if pending is not None:
        raise ConflictError(
            "Document has drafts awaiting approval",
            details={"document_id": d.id, "draft_id": pending},
        )

    with unit_of_work(s):
        d.status = STATUS_ARCHIVED
        d.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=actor,
            action="DOCUMENT_ARCHIVED",
            entity_type="Document",
            entity_id=str(d.id),
            document_id=d.id,
            reason=reason,
            metadata={"title": d.title},
            provenance=provenance,
        )
    return d


def readable_by(stmt, actor: Actor):
    """Filter a statement that selects from or joins `Document` down to rows `actor` may read."""
    # Mirrors DOCUMENT_READ: open classifications for everyone, the rest for owners and reviewers.
    if actor.role in REVIEWER_ROLES:
        return stmt
    return stmt.where(
        or_(
            Document.classification.in_(("public", "internal")),
            Document.owner_user_id == actor.id,
        )
    )


def list_documents(
    s: Session,
    *,
    actor: Actor,
    classification: str | None = None,
    owner_id: int | None = None,
    status: str | None = STATUS_ACTIVE,
    search: str | None = None,
    page: Page = Page(),
) -> list[Document]:
    stmt = readable_by(select(Document), actor)
    if classification:
        stmt = stmt.where(Document.classification == validate_classification(classification))
    if owner_id is not None:
        stmt = stmt.where(Document.owner_user_id == owner_id)
    if status:
        stmt = stmt.where(Document.status == status)
    if search:
        like = f"%{search.strip()}%"
        stmt = stmt.where(or_(Document.title.ilike(like), Document.description.ilike(like)))
    stmt = stmt.order_by(Document.updated_at.desc(), Document.id.desc()).limit(page.limit).offset(page.offset)
    return list(s.scalars(stmt))


def search_documents(
    s: Session,
    query: str,
    *,
    actor: Actor,
    page: Page = Page(),
    provenance: Provenance | None = None,
) -> list[Document]:
    query = require_text(query, "query", max_len=200)
    results = list_documents(s, actor=actor, search=query, page=page)
    with unit_of_work(s):
        record_event(
            s,
            actor=actor,
            action="DOCUMENTS_SEARCHED",
            metadata={"query": query, "results_count": len(results)},
            provenance=provenance,
        )
    return results
