import pytest

from app.pdms import rbac
from app.pdms.errors import AuthorizationError, ValidationError
from app.pdms.models import User


@pytest.mark.parametrize("role", sorted(rbac.ROLES))
def test_admin_only_actions(role):
    expected = role == rbac.ROLE_ADMIN
    assert rbac.is_allowed(role, rbac.USER_ADMIN) is expected
    assert rbac.is_allowed(role, rbac.DOCUMENT_ADMIN) is expected


def test_unknown_role_and_action_are_denied():
    assert rbac.is_allowed("intern", rbac.DOCUMENT_READ) is False
    assert rbac.is_allowed(None, rbac.DOCUMENT_READ) is False
    assert rbac.is_allowed(rbac.ROLE_MANAGEMENT, "document.teleport") is False
    assert rbac.is_allowed(rbac.ROLE_ADMIN, "document.teleport") is True


def test_owner_actions_need_ownership():
    for action in (rbac.DRAFT_EDIT, rbac.DRAFT_DELETE, rbac.DRAFT_SUBMIT, rbac.DOCUMENT_UPDATE):
        assert rbac.is_allowed(rbac.ROLE_LAB, action, is_owner=True) is True
        assert rbac.is_allowed(rbac.ROLE_LAB, action, is_owner=False) is False
        assert rbac.is_allowed(rbac.ROLE_MANAGEMENT, action, is_owner=False) is False
        assert rbac.is_allowed(rbac.ROLE_ADMIN, action, is_owner=False) is True


def test_review_and_reporting_are_for_reviewers():
    for action in (rbac.MERGE_REQUEST_REVIEW, rbac.AUDIT_VIEW, rbac.REPORT_GENERATE):
        assert rbac.is_allowed(rbac.ROLE_MANAGEMENT, action) is True
        assert rbac.is_allowed(rbac.ROLE_LAB, action) is False
        assert rbac.is_allowed(rbac.ROLE_PRODUCTION, action) is False


def test_report_download_owner_or_reviewer():
    assert rbac.is_allowed(rbac.ROLE_LAB, rbac.REPORT_DOWNLOAD, is_owner=True) is True
    assert rbac.is_allowed(rbac.ROLE_LAB, rbac.REPORT_DOWNLOAD) is False
    assert rbac.is_allowed(rbac.ROLE_MANAGEMENT, rbac.REPORT_DOWNLOAD) is True


def test_read_policy_by_classification():
    for classification in ("public", "internal"):
        assert rbac.is_allowed(rbac.ROLE_LAB, rbac.DOCUMENT_READ, classification=classification) is True
    for classification in ("confidential", "restricted"):
        assert rbac.is_allowed(rbac.ROLE_LAB, rbac.DOCUMENT_READ, classification=classification) is False
        assert rbac.is_allowed(
            rbac.ROLE_LAB, rbac.DOCUMENT_READ, is_owner=True, classification=classification
        ) is True
        assert rbac.is_allowed(rbac.ROLE_MANAGEMENT, rbac.DOCUMENT_READ, classification=classification) is True


def test_ensure_allowed_raises_with_action_detail():
    actor = rbac.Actor(id=7, role=rbac.ROLE_LAB, name="Lee")
    with pytest.raises(AuthorizationError) as exc:
        rbac.ensure_allowed(actor, rbac.MERGE_REQUEST_REVIEW)
    assert exc.value.details == {"action": rbac.MERGE_REQUEST_REVIEW}
    assert exc.value.status_code == 403
    rbac.ensure_allowed(actor, rbac.DRAFT_CREATE)


def test_actor_for_rejects_unknown_role():
    u = User(id=3, email="x@example.com", name="X", role="wizard", password_hash="h")
    with pytest.raises(ValidationError):
        rbac.actor_for(u)
    u.role = rbac.ROLE_PRODUCTION
    a = rbac.actor_for(u)
    assert (a.id, a.role, a.is_admin) == (3, rbac.ROLE_PRODUCTION, False)
