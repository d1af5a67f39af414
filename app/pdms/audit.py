from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.pdms.models import AuditEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Provenance:
    """Network origin of a call; passed through to the audit trail unvalidated."""

    ip: str | None = None
    user_agent: str | None = None


def provenance_from_request() -> Provenance:
    if not has_request_context():
        return Provenance()
    return Provenance(ip=request.remote_addr, user_agent=request.headers.get("User-Agent"))


def record_event(
    s: Session,
    *,
    actor: Any | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    document_id: int | None = None,
    draft_id: int | None = None,
    merge_request_id: int | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    provenance: Provenance | None = None,
    request_id: str | None = None,
) -> AuditEvent | None:
    """
    Append-only audit event helper.

    The row joins the caller's transaction inside a SAVEPOINT. A failed audit
    write is logged and dropped; it never fails the business operation.
    """
    if not action:
        raise ValueError("audit action is required")

    # Business rows must flush outside the savepoint so their errors still propagate.
    s.flush()

    prov = provenance or provenance_from_request()
    rid = request_id
    if rid is None and has_request_context():
        rid = getattr(g, "request_id", None)
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=getattr(actor, "email", None) if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        document_id=document_id,
        draft_id=draft_id,
        merge_request_id=merge_request_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=prov.ip,
        user_agent=prov.user_agent,
    )
    try:
        with s.begin_nested():
            s.add(ev)
    except SQLAlchemyError:
        logger.exception("Audit write failed (action=%s entity=%s:%s)", action, entity_type, entity_id)
        return None
    return ev


def list_events(
    s: Session,
    *,
    actor_user_id: int | None = None,
    action: str | None = None,
    document_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditEvent]:
    stmt = select(AuditEvent)
    if actor_user_id is not None:
        stmt = stmt.where(AuditEvent.actor_user_id == actor_user_id)
    if action:
        stmt = stmt.where(AuditEvent.action == action)
    if document_id is not None:
        stmt = stmt.where(AuditEvent.document_id == document_id)
    if start is not None:
        stmt = stmt.where(AuditEvent.created_at >= start)
    if end is not None:
        stmt = stmt.where(AuditEvent.created_at <= end)
    stmt = stmt.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).offset(offset)
    return list(s.scalars(stmt))


def activity_summary(
    s: Session,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    actor_user_id: int | None = None,
) -> list[dict[str, Any]]:
    """Event counts per action, busiest first."""
    stmt = select(AuditEvent.action, func.count(AuditEvent.id))
    if start is not None:
        stmt = stmt.where(AuditEvent.created_at >= start)
    if end is not None:
        stmt = stmt.where(AuditEvent.created_at <= end)
    if actor_user_id is not None:
        stmt = stmt.where(AuditEvent.actor_user_id == actor_user_id)
    stmt = stmt.group_by(AuditEvent.action).order_by(func.count(AuditEvent.id).desc(), AuditEvent.action)
    return [{"action": action, "count": count} for action, count in s.execute(stmt)]
