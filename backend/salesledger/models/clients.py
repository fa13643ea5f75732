from __future__ import annotations

from ..extensions import db
from salesledger.decimal_utils import to_display
from salesledger.time_utils import to_utc_z


class Client(db.Model):
    """
    Registered customer with a running balance.

    BALANCE SEMANTICS:
    - balance > 0: store credit owed to the client (prepaid deposits).
    - balance < 0: debt owed by the client (unpaid pickups).
    - balance is a cache of the fold over ClientLedgerEntry rows and is only
      written by services.client_ledger_service.

    is_active = False means the client is suspended and cannot transact.
    """
    __tablename__ = "clients"
    __table_args__ = (
        db.Index("ix_clients_branch_active", "branch_id", "is_active"),
        db.Index("ix_clients_balance", "balance"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)

    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    address = db.Column(db.String(255), nullable=True)

    balance = db.Column(db.Numeric(20, 2), nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    last_transaction_date = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    branch = db.relationship("Branch", backref=db.backref("clients", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Client id={self.id} name={self.name!r} balance={self.balance}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "name": self.name,
            "phone": self.phone,
            "address": self.address,
            "balance": to_display(self.balance),
            "is_active": self.is_active,
            "last_transaction_date": to_utc_z(self.last_transaction_date) if self.last_transaction_date else None,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ClientLedgerEntry(db.Model):
    """
    Append-only record of one balance-affecting event.

    Rows are never updated or deleted; corrections are new entries.
    balance_before/balance_after make every row independently auditable.
    """
    __tablename__ = "client_ledger_entries"
    __table_args__ = (
        db.Index("ix_client_ledger_client_date", "client_id", "date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)  # DEPOSIT, PURCHASE, PICKUP, RETURN, WHOLESALE
    amount = db.Column(db.Numeric(20, 2), nullable=False)
    balance_before = db.Column(db.Numeric(20, 2), nullable=False)
    balance_after = db.Column(db.Numeric(20, 2), nullable=False)

    description = db.Column(db.String(255), nullable=True)
    reference = db.Column(db.String(64), nullable=True, index=True)  # invoice number

    date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    client = db.relationship("Client", backref=db.backref("ledger_entries", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "type": self.type,
            "amount": to_display(self.amount),
            "balance_before": to_display(self.balance_before),
            "balance_after": to_display(self.balance_after),
            "description": self.description,
            "reference": self.reference,
            "date": to_utc_z(self.date),
            "created_at": to_utc_z(self.created_at),
        }
