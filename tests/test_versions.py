import pytest
from sqlalchemy import func, select

from app.pdms.db import session_scope
from app.pdms.errors import ConflictError, NotFoundError
from app.pdms.modules.document_control import versions
from app.pdms.modules.document_control.documents import get_document_or_404
from app.pdms.modules.document_control.models import DocumentVersion


def _official_count(s, doc_id):
    return s.scalar(
        select(func.count(DocumentVersion.id)).where(
            DocumentVersion.document_id == doc_id, DocumentVersion.is_official.is_(True)
        )
    )


def test_create_document_makes_official_version_one(app, document):
    with session_scope(app) as s:
        v = versions.get_official_version(s, document)
        assert v.version_number == 1
        assert v.is_official is True
        assert v.changes_summary == "Initial version"
        assert _official_count(s, document) == 1


def test_initial_version_twice_is_conflict(app, users, document, put):
    with session_scope(app) as s:
        doc = get_document_or_404(s, document)
        with pytest.raises(ConflictError):
            versions.create_initial_version(s, doc, put(b"again"), created_by=users["author"].id)
    with session_scope(app) as s:
        assert len(versions.list_versions(s, document)) == 1


def test_promote_requires_document_lock(app, users, document, put):
    with session_scope(app) as s:
        with pytest.raises(RuntimeError):
            versions.promote(s, document, put(b"v2"), created_by=users["admin"].id)


def test_promote_appends_and_moves_official_flag(app, users, document, put):
    with session_scope(app) as s:
        with versions.document_lock(s, document):
            v2 = versions.promote(s, document, put(b"v2 body"), created_by=users["admin"].id, changes_summary="two")
            s.commit()
    with session_scope(app) as s:
        with versions.document_lock(s, document):
            versions.promote(s, document, put(b"v3 body!"), created_by=users["admin"].id, changes_summary="three")
            s.commit()

    with session_scope(app) as s:
        listed = versions.list_versions(s, document)
        assert [v.version_number for v in listed] == [3, 2, 1]
        assert [v.is_official for v in listed] == [True, False, False]
        assert _official_count(s, document) == 1
        assert versions.get_official_version(s, document).version_number == 3
        assert versions.get_version(s, document, 2).id == v2.id


def test_lock_is_reentrant_and_released(app, document):
    with session_scope(app) as s:
        with versions.document_lock(s, document):
            with versions.document_lock(s, document):
                assert versions.holds_document_lock(document)
            assert versions.holds_document_lock(document)
        assert not versions.holds_document_lock(document)


def test_lock_on_missing_document_is_not_found(app):
    with session_scope(app) as s:
        with pytest.raises(NotFoundError):
            with versions.document_lock(s, 9999):
                pass
        assert not versions.holds_document_lock(9999)


def test_lookups_on_missing_rows(app, document):
    with session_scope(app) as s:
        with pytest.raises(NotFoundError):
            versions.list_versions(s, 9999)
        with pytest.raises(NotFoundError):
            versions.get_official_version(s, 9999)
        with pytest.raises(NotFoundError):
            versions.get_version(s, document, 42)


def test_compare_versions_reports_metadata_delta(app, users, document, put):
    with session_scope(app) as s:
        with versions.document_lock(s, document):
            versions.promote(s, document, put(b"v2 body, longer"), created_by=users["admin"].id)
            s.commit()

    with session_scope(app) as s:
        cmp = versions.compare_versions(s, document, 1, 2)
        assert cmp["content_changed"] is True
        assert cmp["size_delta"] == len(b"v2 body, longer") - len(b"v1 body")
        assert cmp["from"].version_number == 1
        assert cmp["to"].version_number == 2

        same = versions.compare_versions(s, document, 2, 2)
        assert same["content_changed"] is False
        assert same["size_delta"] == 0


def test_document_lock_registry_drops_released_locks(app, document):
    with session_scope(app) as s:
        with versions.document_lock(s, document):
            with versions.document_lock(s, document):
                assert versions._locks[document].users == 2
            assert versions.holds_document_lock(document)
            s.commit()
    assert document not in versions._locks
    assert not versions.holds_document_lock(document)

    with session_scope(app) as s:
        with pytest.raises(NotFoundError):
            with versions.document_lock(s, 9999):
                pass
    assert 9999 not in versions._locks
