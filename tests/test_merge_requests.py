import threading

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.pdms.db import session_scope
from app.pdms.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.pdms.models import AuditEvent, User
from app.pdms.modules.document_control import drafts, merge_requests, versions
from app.pdms.modules.document_control.documents import archive_document, create_document
from app.pdms.modules.document_control.models import DocumentVersion, Draft, MergeRequest
from app.pdms.modules.document_control.projections import merge_request_views


def _submitted(app, users, document, put, *, approver="manager", name="Rev 2", body=b"rev 2 body"):
    with session_scope(app) as s:
        base = versions.get_official_version(s, document)
        d = drafts.create_draft(
            s, document_id=document, name=name, base_version_id=base.id, actor=users["author"]
        )
        drafts.update_draft(s, d.id, drafts.DraftPatch(content=put(body)), actor=users["author"])
        mr = merge_requests.submit(
            s, draft_id=d.id, approver_id=users[approver].id, summary=f"{name} changes", actor=users["author"]
        )
        return d.id, mr.id


def _version_count(s, doc_id):
    return s.scalar(select(func.count(DocumentVersion.id)).where(DocumentVersion.document_id == doc_id))


def test_submit_freezes_draft_and_opens_pending_request(app, users, document, put):
    draft_id, mr_id = _submitted(app, users, document, put)
    with session_scope(app) as s:
        mr = s.get(MergeRequest, mr_id)
        assert mr.status == merge_requests.MR_PENDING
        assert mr.approver_user_id == users["manager"].id
        assert mr.requested_by_user_id == users["author"].id
        assert s.get(Draft, draft_id).status == drafts.DRAFT_PENDING_APPROVAL


def test_approve_promotes_draft_to_next_official_version(app, users, document, put):
    draft_id, mr_id = _submitted(app, users, document, put)
    with session_scope(app) as s:
        mr = merge_requests.approve(s, mr_id, actor=users["manager"])
        assert mr.status == merge_requests.MR_APPROVED
        assert mr.approved_at is not None

    with session_scope(app) as s:
        listed = versions.list_versions(s, document)
        assert [(v.version_number, v.is_official) for v in listed] == [(2, True), (1, False)]
        draft = s.get(Draft, draft_id)
        assert draft.status == drafts.DRAFT_APPROVED
        assert listed[0].checksum == draft.checksum
        assert listed[0].changes_summary == "Rev 2 changes"

        mr = s.get(MergeRequest, mr_id)
        assert mr.resulting_version_id == listed[0].id
        view = merge_request_views(s, [mr])[0]
        assert view.approver_name == "Mia Manager"
        assert view.resulting_version_number == 2

        ev = s.scalars(select(AuditEvent).where(AuditEvent.action == "MERGE_REQUEST_APPROVED")).one()
        assert ev.merge_request_id == mr_id
        assert ev.document_id == document
        assert ev.actor_user_id == users["manager"].id


def test_reject_returns_draft_to_in_progress(app, users, document, put):
    draft_id, mr_id = _submitted(app, users, document, put)
    with session_scope(app) as s:
        mr = merge_requests.reject(s, mr_id, reason="incomplete", actor=users["manager"])
        assert mr.status == merge_requests.MR_REJECTED
        assert mr.rejection_reason == "incomplete"

    with session_scope(app) as s:
        assert s.get(Draft, draft_id).status == drafts.DRAFT_IN_PROGRESS
        official = versions.get_official_version(s, document)
        assert official.version_number == 1
        assert _version_count(s, document) == 1


def test_rejected_draft_can_be_resubmitted_to_another_approver(app, users, document, put):
    draft_id, mr_id = _submitted(app, users, document, put)
    with session_scope(app) as s:
        merge_requests.reject(s, mr_id, reason="incomplete", actor=users["manager"])
        drafts.update_draft(s, draft_id, drafts.DraftPatch(description="fixed"), actor=users["author"])
        again = merge_requests.submit(
            s, draft_id=draft_id, approver_id=users["manager2"].id, summary="second try", actor=users["author"]
        )
        assert again.id != mr_id

    with session_scope(app) as s:
        rows = merge_requests.list_merge_requests(s, actor=users["author"], draft_id=draft_id)
        assert sorted(r.status for r in rows) == ["pending", "rejected"]


def test_reject_requires_reason(app, users, document, put):
    _, mr_id = _submitted(app, users, document, put)
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            merge_requests.reject(s, mr_id, reason="  ", actor=users["manager"])
        assert s.get(MergeRequest, mr_id).status == merge_requests.MR_PENDING


def test_second_submit_on_pending_draft_is_conflict(app, users, document, put):
    draft_id, _ = _submitted(app, users, document, put)
    with session_scope(app) as s:
        with pytest.raises(ConflictError):
            merge_requests.submit(
                s, draft_id=draft_id, approver_id=users["manager2"].id, summary="again", actor=users["author"]
            )
    with session_scope(app) as s:
        pending = s.scalar(
            select(func.count(MergeRequest.id)).where(
                MergeRequest.draft_id == draft_id, MergeRequest.status == merge_requests.MR_PENDING
            )
        )
        assert pending == 1


def test_one_pending_request_per_draft_is_enforced_by_the_database(app, users, document, put):
    draft_id, _ = _submitted(app, users, document, put)
    with session_scope(app) as s:
        s.add(
            MergeRequest(
                draft_id=draft_id,
                approver_user_id=users["manager"].id,
                requested_by_user_id=users["author"].id,
                summary="sneaked in",
                status=merge_requests.MR_PENDING,
            )
        )
        with pytest.raises(IntegrityError):
            s.flush()
        s.rollback()


def test_submit_validates_approver(app, users, document, put):
    with session_scope(app) as s:
        base = versions.get_official_version(s, document)
        d = drafts.create_draft(s, document_id=document, name="R", base_version_id=base.id, actor=users["author"])
        with pytest.raises(NotFoundError):
            merge_requests.submit(s, draft_id=d.id, approver_id=9999, summary="x", actor=users["author"])
        with pytest.raises(ValidationError):
            merge_requests.submit(s, draft_id=d.id, approver_id=users["other"].id, summary="x", actor=users["author"])

        s.get(User, users["manager"].id).is_active = False
        s.commit()
        with pytest.raises(ValidationError):
            merge_requests.submit(s, draft_id=d.id, approver_id=users["manager"].id, summary="x", actor=users["author"])


def test_only_creator_or_admin_can_submit(app, users, document):
    with session_scope(app) as s:
        base = versions.get_official_version(s, document)
        d = drafts.create_draft(s, document_id=document, name="R", base_version_id=base.id, actor=users["author"])
        with pytest.raises(AuthorizationError):
            merge_requests.submit(s, draft_id=d.id, approver_id=users["manager"].id, summary="x", actor=users["other"])
        mr = merge_requests.submit(s, draft_id=d.id, approver_id=users["manager"].id, summary="x", actor=users["admin"])
        assert mr.requested_by_user_id == users["admin"].id


def test_approve_non_pending_is_authorization_error_and_leaves_versions(app, users, document, put):
    _, mr_id = _submitted(app, users, document, put)
    with session_scope(app) as s:
        merge_requests.approve(s, mr_id, actor=users["manager"])

    with session_scope(app) as s:
        with pytest.raises(AuthorizationError):
            merge_requests.approve(s, mr_id, actor=users["manager"])
        with pytest.raises(AuthorizationError):
            merge_requests.reject(s, mr_id, reason="too late", actor=users["manager"])

    with session_scope(app) as s:
        assert _version_count(s, document) == 2
        assert versions.get_official_version(s, document).version_number == 2


def test_stale_request_object_cannot_be_approved_twice(app, users, document, put):
    _, mr_id = _submitted(app, users, document, put)
    with session_scope(app) as stale:
        mr = stale.get(MergeRequest, mr_id)
        assert mr.status == merge_requests.MR_PENDING

        with session_scope(app) as s:
            merge_requests.approve(s, mr_id, actor=users["manager"])

        # `stale` still believes the request is pending.
        with pytest.raises(AuthorizationError):
            merge_requests.approve(stale, mr_id, actor=users["manager"])

    with session_scope(app) as s:
        assert _version_count(s, document) == 2


def test_only_designated_reviewer_or_admin_may_decide(app, users, document, put):
    _, mr_id = _submitted(app, users, document, put)
    with session_scope(app) as s:
        with pytest.raises(AuthorizationError):
            merge_requests.approve(s, mr_id, actor=users["author"])
        with pytest.raises(AuthorizationError):
            merge_requests.approve(s, mr_id, actor=users["manager2"])
        mr = merge_requests.approve(s, mr_id, actor=users["admin"])
        assert mr.status == merge_requests.MR_APPROVED


def test_failed_promotion_leaves_request_pending(app, users, document, put, monkeypatch):
    draft_id, mr_id = _submitted(app, users, document, put)

    def _boom(*args, **kwargs):
        raise RuntimeError("storage offline")

    monkeypatch.setattr(merge_requests, "promote", _boom)
    with session_scope(app) as s:
        with pytest.raises(RuntimeError):
            merge_requests.approve(s, mr_id, actor=users["manager"])

    with session_scope(app) as s:
        assert s.get(MergeRequest, mr_id).status == merge_requests.MR_PENDING
        assert s.get(Draft, draft_id).status == drafts.DRAFT_PENDING_APPROVAL
        assert _version_count(s, document) == 1
        assert s.scalar(
            select(func.count(AuditEvent.id)).where(AuditEvent.action == "MERGE_REQUEST_APPROVED")
        ) == 0


def test_archive_blocked_while_drafts_pending(app, users, document, put):
    _, mr_id = _submitted(app, users, document, put)
    with session_scope(app) as s:
        with pytest.raises(ConflictError):
            archive_document(s, document, reason="retire", actor=users["admin"])
        merge_requests.reject(s, mr_id, reason="no", actor=users["manager"])
        d = archive_document(s, document, reason="retire", actor=users["admin"])
        assert d.status == "archived"


def test_concurrent_approvals_number_versions_sequentially(app, users, document, put):
    n = 5
    mr_ids = [
        _submitted(app, users, document, put, name=f"Rev {i}", body=f"body {i}".encode())[1] for i in range(n)
    ]
    errors: list[BaseException] = []
    barrier = threading.Barrier(n)

    def _approve(mr_id: int) -> None:
        try:
            barrier.wait()
            with session_scope(app) as s:
                merge_requests.approve(s, mr_id, actor=users["manager"])
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=_approve, args=(mr_id,)) for mr_id in mr_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    with session_scope(app) as s:
        listed = versions.list_versions(s, document)
        assert sorted(v.version_number for v in listed) == list(range(1, n + 2))
        assert [v.version_number for v in listed if v.is_official] == [n + 1]
        resulting = s.scalars(select(MergeRequest.resulting_version_id).where(MergeRequest.id.in_(mr_ids))).all()
        assert len(set(resulting)) == n


def test_list_merge_requests_hides_unreadable_documents(app, users, document, put):
    _, visible = _submitted(app, users, document, put)
    with session_scope(app) as s:
        secret = create_document(
            s, title="Secret", file_type="text/plain", classification="confidential", content=put(b"s"), actor=users["manager"]
        )
        base = versions.get_official_version(s, secret.id)
        d = drafts.create_draft(s, document_id=secret.id, name="secret rev", base_version_id=base.id, actor=users["manager"])
        hidden = merge_requests.submit(
            s, draft_id=d.id, approver_id=users["manager2"].id, summary="secret", actor=users["manager"]
        ).id

    with session_scope(app) as s:
        assert [mr.id for mr in merge_requests.list_merge_requests(s, actor=users["author"])] == [visible]
        assert [mr.id for mr in merge_requests.list_merge_requests(s, actor=users["other"])] == [visible]
        pending = merge_requests.list_merge_requests(s, actor=users["manager2"], status=merge_requests.MR_PENDING)
        assert {mr.id for mr in pending} == {visible, hidden}


def test_concurrent_approvals_of_one_request_promote_once(app, users, document, put):
    _, mr_id = _submitted(app, users, document, put)
    n = 4
    outcomes: list[str] = []
    barrier = threading.Barrier(n)

    def _approve() -> None:
        barrier.wait()
        try:
            with session_scope(app) as s:
                merge_requests.approve(s, mr_id, actor=users["manager"])
            outcomes.append("ok")
        except AuthorizationError:
            outcomes.append("denied")
        except BaseException as e:
            outcomes.append(repr(e))

    threads = [threading.Thread(target=_approve) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(outcomes) == ["denied"] * (n - 1) + ["ok"]
    with session_scope(app) as s:
        assert _version_count(s, document) == 2
        assert versions.get_official_version(s, document).version_number == 2
        assert s.scalar(
            select(func.count(AuditEvent.id)).where(AuditEvent.action == "MERGE_REQUEST_APPROVED")
        ) == 1
