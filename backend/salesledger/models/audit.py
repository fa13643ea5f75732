from __future__ import annotations

import json

from ..extensions import db
from salesledger.time_utils import to_utc_z


class AuditLogEntry(db.Model):
    """
    Append-only operator audit trail.

    Written after the business commit in its own short transaction, so a
    missing row never implies a missing sale.
    """
    __tablename__ = "audit_log_entries"
    __table_args__ = (
        db.Index("ix_audit_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    action = db.Column(db.String(64), nullable=False, index=True)  # TRANSACTION_CREATED, STOCK_RECONCILED, ...
    details = db.Column(db.String(500), nullable=True)

    actor_id = db.Column(db.Integer, nullable=True, index=True)
    actor_role = db.Column(db.String(32), nullable=True)
    branch_id = db.Column(db.Integer, nullable=True, index=True)

    entity_type = db.Column(db.String(64), nullable=True)
    entity_id = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    payload = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "details": self.details,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "branch_id": self.branch_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "payload": json.loads(self.payload) if self.payload else None,
        }
