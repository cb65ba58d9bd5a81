# Overview: Service-layer operations for the audit trail; append-only, no business logic.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import AuditEvent
"""
Audit Trail Invariants (authoritative)

- Append-only audit log for cross-cutting domain events.
- No domain/business logic in the audit log itself.
- Events are written inside the same DB transaction as the domain event they record.
- occurred_at is business time; created_at is system time (DB default).
"""


def append_audit_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id,
    actor: str | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[dict] = None,
) -> AuditEvent:
    """
    Append-only audit event.

    - No deletes/updates of existing events.
    - Caller owns the transaction (flush only, never commit).
    """
    ev = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        actor=actor,
        occurred_at=occurred_at,  # if None, db default applies
        note=note[:255] if note else note,
        payload=payload,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def list_audit_events(
    *,
    entity_type: str | None = None,
    entity_id=None,
    event_type: str | None = None,
    limit: int = 200,
) -> list[AuditEvent]:
    q = db.session.query(AuditEvent)
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id is not None:
        q = q.filter(AuditEvent.entity_id == str(entity_id))
    if event_type:
        q = q.filter(AuditEvent.event_type == event_type)
    return q.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit).all()
