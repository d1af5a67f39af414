"""
Version store: the official version timeline of each document.

Versions are append-only. `promote` is the only way a new official version
appears after creation, and it must run while the caller holds
`document_lock(s, document_id)` through commit.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.pdms.errors import ConflictError, NotFoundError
from app.pdms.storage import ContentRef

from .models import Document, DocumentVersion

logger = logging.getLogger(__name__)


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


# Entries live only while some thread holds or waits on them.
_locks: dict[int, _LockEntry] = {}
_locks_guard = threading.Lock()
_held = threading.local()


def _checkout(document_id: int) -> _LockEntry:
    with _locks_guard:
        entry = _locks.get(document_id)
        if entry is None:
            entry = _LockEntry()
            _locks[document_id] = entry
        entry.users += 1
        return entry


def _checkin(document_id: int, entry: _LockEntry) -> None:
    with _locks_guard:
        entry.users -= 1
        if entry.users == 0 and _locks.get(document_id) is entry:
            del _locks[document_id]


def _held_ids() -> dict[int, int]:
    ids = getattr(_held, "ids", None)
    if ids is None:
        ids = {}
        _held.ids = ids
    return ids


def holds_document_lock(document_id: int) -> bool:
    return _held_ids().get(document_id, 0) > 0


@contextmanager
def document_lock(s: Session, document_id: int) -> Generator[Document, None, None]:
    """
    Per-document mutual exclusion.

    Holds a process-local lock and row-locks the document (`SELECT ... FOR UPDATE`,
    a no-op on SQLite) so concurrent promotions of one document run one at a time.
    Commit before leaving the block.
    """
    entry = _checkout(document_id)
    held = _held_ids()
    try:
        with entry.lock:
            held[document_id] = held.get(document_id, 0) + 1
            try:
                doc = s.execute(
                    select(Document)
                    .where(Document.id == document_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                ).scalar_one_or_none()
                if doc is None:
                    raise NotFoundError("Document not found", details={"document_id": document_id})
                yield doc
            finally:
                held[document_id] -= 1
                if not held[document_id]:
                    del held[document_id]
    finally:
        _checkin(document_id, entry)


def _require_document(s: Session, document_id: int) -> Document:
    doc = s.get(Document, document_id)
    if doc is None:
        raise NotFoundError("Document not found", details={"document_id": document_id})
    return doc


def create_initial_version(
    s: Session,
    document: Document,
    content: ContentRef,
    *,
    created_by: int,
    changes_summary: str = "Initial version",
) -> DocumentVersion:
    """Version 1, official. A second call for the same document is a conflict."""
    existing = s.scalar(
        select(func.count(DocumentVersion.id)).where(DocumentVersion.document_id == document.id)
    )
    if existing:
        raise ConflictError(
            "Document already has an initial version",
            details={"document_id": document.id},
        )

    v = DocumentVersion(
        document_id=document.id,
        version_number=1,
        file_path=content.path,
        file_size=content.size,
        checksum=content.checksum,
        changes_summary=changes_summary,
        is_official=True,
        created_by_user_id=created_by,
    )
    try:
        with s.begin_nested():
            s.add(v)
    except IntegrityError as e:
        raise ConflictError(
            "Document already has an initial version",
            details={"document_id": document.id},
        ) from e
    return v


def get_official_version(s: Session, document_id: int) -> DocumentVersion:
    _require_document(s, document_id)
    v = s.execute(
        select(DocumentVersion).where(
            DocumentVersion.document_id == document_id,
            DocumentVersion.is_official.is_(True),
        )
    ).scalar_one_or_none()
    if v is None:
        raise NotFoundError("Document has no official version", details={"document_id": document_id})
    return v


def promote(
    s: Session,
    document_id: int,
    content: ContentRef,
    *,
    created_by: int,
    changes_summary: str = "",
) -> DocumentVersion:
    """
    Retire the current official version and install `content` as the next one.

    Reads the max version number, demotes every existing version and inserts
    the new official row, all in the caller's transaction.
    """
    if not holds_document_lock(document_id):
        raise RuntimeError(f"promote() requires document_lock for document {document_id}")

    current_max = s.scalar(
        select(func.max(DocumentVersion.version_number)).where(DocumentVersion.document_id == document_id)
    )
    if current_max is None:
        raise NotFoundError("Document has no versions to promote from", details={"document_id": document_id})
    next_number = current_max + 1

    s.execute(
        update(DocumentVersion)
        .where(DocumentVersion.document_id == document_id, DocumentVersion.is_official.is_(True))
        .values(is_official=False)
    )
    v = DocumentVersion(
        document_id=document_id,
        version_number=next_number,
        file_path=content.path,
        file_size=content.size,
        checksum=content.checksum,
        changes_summary=changes_summary,
        is_official=True,
        created_by_user_id=created_by,
    )
    try:
        with s.begin_nested():
            s.add(v)
    except IntegrityError as e:
        raise ConflictError(
            "Concurrent promotion detected",
            details={"document_id": document_id, "version_number": next_number},
        ) from e

    logger.info("Promoted document=%s to version=%s (by user=%s)", document_id, next_number, created_by)
    return v


def list_versions(s: Session, document_id: int) -> list[DocumentVersion]:
    _require_document(s, document_id)
    return list(
        s.scalars(
            select(DocumentVersion)
            .where(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.version_number.desc())
        )
    )


def get_version(s: Session, document_id: int, version_number: int) -> DocumentVersion:
    v = s.execute(
        select(DocumentVersion).where(
            DocumentVersion.document_id == document_id,
            DocumentVersion.version_number == version_number,
        )
    ).scalar_one_or_none()
    if v is None:
        raise NotFoundError(
            "Document version not found",
            details={"document_id": document_id, "version_number": version_number},
        )
    return v


def compare_versions(s: Session, document_id: int, from_number: int, to_number: int) -> dict[str, Any]:
    """Metadata comparison of two versions; content bytes are not read."""
    old = get_version(s, document_id, from_number)
    new = get_version(s, document_id, to_number)
    return {
        "document_id": document_id,
        "from": old,
        "to": new,
        "content_changed": old.checksum != new.checksum,
        "size_delta": new.file_size - old.file_size,
    }
