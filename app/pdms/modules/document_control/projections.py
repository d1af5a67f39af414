"""
Read-model projections for display.

Names and titles are resolved here, in batched lookups, and never stored on
the write-side entities.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.pdms.models import User

from .models import Document, DocumentVersion, Draft, MergeRequest


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _user_names(s: Session, ids: Iterable[int | None]) -> dict[int, str]:
    wanted = {i for i in ids if i is not None}
    if not wanted:
        return {}
    return dict(s.execute(select(User.id, User.name).where(User.id.in_(wanted))).all())


def _document_titles(s: Session, ids: Iterable[int]) -> dict[int, str]:
    wanted = set(ids)
    if not wanted:
        return {}
    return dict(s.execute(select(Document.id, Document.title).where(Document.id.in_(wanted))).all())


def _version_numbers(s: Session, ids: Iterable[int | None]) -> dict[int, int]:
    wanted = {i for i in ids if i is not None}
    if not wanted:
        return {}
    return dict(
        s.execute(select(DocumentVersion.id, DocumentVersion.version_number).where(DocumentVersion.id.in_(wanted))).all()
    )


@dataclass(frozen=True)
class VersionView:
    id: int
    document_id: int
    version_number: int
    file_path: str
    file_size: int
    checksum: str
    changes_summary: str
    is_official: bool
    created_by_user_id: int
    created_by_name: str | None
    created_at: str | None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DocumentView:
    id: int
    title: str
    description: str | None
    classification: str
    file_type: str
    status: str
    owner_user_id: int
    owner_name: str | None
    official_version_number: int | None
    created_at: str | None
    updated_at: str | None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DraftView:
    id: int
    document_id: int
    document_title: str | None
    base_version_id: int
    base_version_number: int | None
    name: str
    description: str | None
    status: str
    file_path: str
    file_size: int
    checksum: str
    creator_user_id: int
    creator_name: str | None
    created_at: str | None
    updated_at: str | None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MergeRequestView:
    id: int
    draft_id: int
    draft_name: str | None
    document_id: int | None
    document_title: str | None
    summary: str
    status: str
    approver_user_id: int
    approver_name: str | None
    requested_by_user_id: int
    requested_by_name: str | None
    approved_at: str | None
    rejected_at: str | None
    rejection_reason: str | None
    resulting_version_number: int | None
    created_at: str | None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def version_views(s: Session, versions: list[DocumentVersion]) -> list[VersionView]:
    names = _user_names(s, (v.created_by_user_id for v in versions))
    return [
        VersionView(
            id=v.id,
            document_id=v.document_id,
            version_number=v.version_number,
            file_path=v.file_path,
            file_size=v.file_size,
            checksum=v.checksum,
            changes_summary=v.changes_summary,
            is_official=v.is_official,
            created_by_user_id=v.created_by_user_id,
            created_by_name=names.get(v.created_by_user_id),
            created_at=_iso(v.created_at),
        )
        for v in versions
    ]


def document_views(s: Session, documents: list[Document]) -> list[DocumentView]:
    names = _user_names(s, (d.owner_user_id for d in documents))
    official: dict[int, int] = {}
    if documents:
        official = dict(
            s.execute(
                select(DocumentVersion.document_id, DocumentVersion.version_number).where(
                    DocumentVersion.document_id.in_([d.id for d in documents]),
                    DocumentVersion.is_official.is_(True),
                )
            ).all()
        )
    return [
        DocumentView(
            id=d.id,
            title=d.title,
            description=d.description,
            classification=d.classification,
            file_type=d.file_type,
            status=d.status,
            owner_user_id=d.owner_user_id,
            owner_name=names.get(d.owner_user_id),
            official_version_number=official.get(d.id),
            created_at=_iso(d.created_at),
            updated_at=_iso(d.updated_at),
        )
        for d in documents
    ]


def draft_views(s: Session, drafts: list[Draft]) -> list[DraftView]:
    names = _user_names(s, (d.creator_user_id for d in drafts))
    titles = _document_titles(s, (d.document_id for d in drafts))
    numbers = _version_numbers(s, (d.base_version_id for d in drafts))
    return [
        DraftView(
            id=d.id,
            document_id=d.document_id,
            document_title=titles.get(d.document_id),
            base_version_id=d.base_version_id,
            base_version_number=numbers.get(d.base_version_id),
            name=d.name,
            description=d.description,
            status=d.status,
            file_path=d.file_path,
            file_size=d.file_size,
            checksum=d.checksum,
            creator_user_id=d.creator_user_id,
            creator_name=names.get(d.creator_user_id),
            created_at=_iso(d.created_at),
            updated_at=_iso(d.updated_at),
        )
        for d in drafts
    ]


def merge_request_views(s: Session, requests: list[MergeRequest]) -> list[MergeRequestView]:
    drafts: dict[int, tuple[str, int]] = {}
    if requests:
        drafts = {
            row.id: (row.name, row.document_id)
            for row in s.execute(
                select(Draft.id, Draft.name, Draft.document_id).where(Draft.id.in_({m.draft_id for m in requests}))
            )
        }
    titles = _document_titles(s, (doc_id for _, doc_id in drafts.values()))
    names = _user_names(s, [m.approver_user_id for m in requests] + [m.requested_by_user_id for m in requests])
    numbers = _version_numbers(s, (m.resulting_version_id for m in requests))

    views = []
    for m in requests:
        draft_name, document_id = drafts.get(m.draft_id, (None, None))
        views.append(
            MergeRequestView(
                id=m.id,
                draft_id=m.draft_id,
                draft_name=draft_name,
                document_id=document_id,
                document_title=titles.get(document_id) if document_id is not None else None,
                summary=m.summary,
                status=m.status,
                approver_user_id=m.approver_user_id,
                approver_name=names.get(m.approver_user_id),
                requested_by_user_id=m.requested_by_user_id,
                requested_by_name=names.get(m.requested_by_user_id),
                approved_at=_iso(m.approved_at),
                rejected_at=_iso(m.rejected_at),
                rejection_reason=m.rejection_reason,
                resulting_version_number=numbers.get(m.resulting_version_id) if m.resulting_version_id else None,
                created_at=_iso(m.created_at),
            )
        )
    return views
