# Overview: Service-layer operations for the audit trail; appends and lists audit entries.

from __future__ import annotations

import json
from datetime import datetime

from ..extensions import db
from ..models import AuditLogEntry
from salesledger.identity import Actor
from salesledger.time_utils import utcnow
from .concurrency import SideEffectResult, run_after_commit


def append_audit_entry(
    action: str,
    *,
    actor: Actor | None = None,
    entity_type: str | None = None,
    entity_id: int | None = None,
    branch_id: int | None = None,
    details: str | None = None,
    payload: dict | None = None,
    occurred_at: datetime | None = None,
) -> AuditLogEntry:
    """
    Append one audit row and commit it in its own short transaction.

    Audit rows are immutable. Callers inside a business unit must use
    record_audit() after that unit has committed.
    """
    entry = AuditLogEntry(
        action=action,
        details=(details or "")[:500] or None,
        actor_id=actor.id if actor else None,
        actor_role=actor.role if actor else None,
        branch_id=branch_id if branch_id is not None else (actor.branch_id if actor else None),
        entity_type=entity_type,
        entity_id=entity_id,
        occurred_at=occurred_at or utcnow(),
        payload=json.dumps(payload, default=str, sort_keys=True) if payload is not None else None,
    )
    db.session.add(entry)
    db.session.commit()
    return entry


def record_audit(action: str, **kwargs) -> SideEffectResult:
    """Best-effort wrapper: a failing audit write is logged, never raised."""
    return run_after_commit(append_audit_entry, action, label=f"audit:{action}", **kwargs)

