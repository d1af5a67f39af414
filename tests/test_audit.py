import logging

from sqlalchemy import select

from app.pdms import audit
from app.pdms.audit import Provenance
from app.pdms.db import session_scope
from app.pdms.models import AuditEvent
from app.pdms.modules.document_control.documents import create_document, get_document
from app.pdms.modules.document_control.models import Document


def test_events_carry_actor_and_provenance(app, users, document):
    with session_scope(app) as s:
        get_document(s, document, actor=users["other"], provenance=Provenance(ip="10.0.0.9", user_agent="pytest"))

    with session_scope(app) as s:
        ev = s.scalars(select(AuditEvent).where(AuditEvent.action == "DOCUMENT_VIEWED")).one()
        assert ev.actor_user_id == users["other"].id
        assert ev.actor_user_email == "other@example.com"
        assert ev.document_id == document
        assert ev.client_ip == "10.0.0.9"
        assert ev.user_agent == "pytest"


def test_audit_failure_does_not_block_operation(app, users, put, monkeypatch, caplog):
    real = audit.AuditEvent

    def _broken(**kwargs):
        # NOT NULL violation inside the audit savepoint.
        return real(**{**kwargs, "action": None})

    monkeypatch.setattr(audit, "AuditEvent", _broken)
    with caplog.at_level(logging.ERROR, logger="app.pdms.audit"):
        with session_scope(app) as s:
            d = create_document(
                s,
                title="Still created",
                file_type="text/plain",
                classification="internal",
                content=put(b"body"),
                actor=users["author"],
            )
            doc_id = d.id

    assert "Audit write failed" in caplog.text
    with session_scope(app) as s:
        assert s.get(Document, doc_id).title == "Still created"
        assert s.scalars(select(AuditEvent)).all() == []


def test_list_events_filters_and_activity_summary(app, users, document):
    with session_scope(app) as s:
        get_document(s, document, actor=users["other"])
        get_document(s, document, actor=users["other"])
        get_document(s, document, actor=users["manager"])

    with session_scope(app) as s:
        viewed = audit.list_events(s, action="DOCUMENT_VIEWED")
        assert len(viewed) == 3
        assert len(audit.list_events(s, actor_user_id=users["other"].id)) == 2
        assert len(audit.list_events(s, document_id=document, limit=2)) == 2

        summary = audit.activity_summary(s)
        assert summary[0] == {"action": "DOCUMENT_VIEWED", "count": 3}
        assert {"action": "DOCUMENT_CREATED", "count": 1} in summary

        mine = audit.activity_summary(s, actor_user_id=users["manager"].id)
        assert mine == [{"action": "DOCUMENT_VIEWED", "count": 1}]
