from __future__ import annotations

from ..extensions import db
from salesledger.decimal_utils import format_quantity, to_display
from salesledger.time_utils import to_utc_z


TYPE_DEPOSIT = "DEPOSIT"
TYPE_PURCHASE = "PURCHASE"
TYPE_PICKUP = "PICKUP"
TYPE_RETURN = "RETURN"
TYPE_WHOLESALE = "WHOLESALE"

TRANSACTION_TYPES = (TYPE_DEPOSIT, TYPE_PURCHASE, TYPE_PICKUP, TYPE_RETURN, TYPE_WHOLESALE)

STATUS_PENDING = "PENDING"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"

TRANSACTION_STATUSES = (STATUS_PENDING, STATUS_COMPLETED, STATUS_CANCELLED)


def _money(value):
    return to_display(value) if value is not None else None


class Transaction(db.Model):
    """
    Sales transaction (purchase, pickup, deposit, return, wholesale).

    CUSTOMER:
    - Exactly one of client_id or walk_in_name is set.

    ACCOUNTING:
    - subtotal = sum(item.subtotal);
      total = subtotal - discount + transport_fare + loading + loading_and_offloading.
    - `date` is the accounting date; it chooses the invoice prefix.
    - Everything except amount_paid, status, notes, payment_method, pickup
      and waybill fields is immutable after creation.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_transactions_invoice_number"),
        db.Index("ix_transactions_branch_date", "branch_id", "date"),
        db.Index("ix_transactions_client_date", "client_id", "date"),
        db.Index("ix_transactions_type_status", "type", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(32), nullable=False)
    type = db.Column(db.String(16), nullable=False)

    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=True, index=True)
    walk_in_name = db.Column(db.String(255), nullable=True)
    walk_in_phone = db.Column(db.String(32), nullable=True)
    walk_in_address = db.Column(db.String(255), nullable=True)

    actor_id = db.Column(db.Integer, nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    subtotal = db.Column(db.Numeric(20, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(20, 2), nullable=False, default=0)
    # Additional charges; loading and loading_and_offloading are exclusive
    transport_fare = db.Column(db.Numeric(20, 2), nullable=False, default=0)
    loading = db.Column(db.Numeric(20, 2), nullable=False, default=0)
    loading_and_offloading = db.Column(db.Numeric(20, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(20, 2), nullable=False, default=0)
    amount_paid = db.Column(db.Numeric(20, 2), nullable=False, default=0)
    # Part of total settled from the client's positive balance
    credit_applied = db.Column(db.Numeric(20, 2), nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=STATUS_COMPLETED, index=True)
    payment_method = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    waybill_number = db.Column(db.String(32), nullable=True, index=True)
    is_picked_up = db.Column(db.Boolean, nullable=False, default=False)
    pickup_date = db.Column(db.DateTime(timezone=True), nullable=True)

    date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    # RETURN only
    reference_transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True, index=True)
    reason = db.Column(db.String(255), nullable=True)
    total_refunded_amount = db.Column(db.Numeric(20, 2), nullable=True)
    actual_amount_returned = db.Column(db.Numeric(20, 2), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    client = db.relationship("Client", backref=db.backref("transactions", lazy="dynamic"))
    items = db.relationship(
        "TransactionItem",
        backref="transaction",
        order_by="TransactionItem.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    reference_transaction = db.relationship("Transaction", remote_side=[id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_walk_in(self) -> bool:
        return self.client_id is None

    def customer_name(self) -> str | None:
        if self.client is not None:
            return self.client.name
        return self.walk_in_name

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} invoice={self.invoice_number} type={self.type} total={self.total}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "type": self.type,
            "client_id": self.client_id,
            "walk_in_client": None if self.client_id else {
                "name": self.walk_in_name,
                "phone": self.walk_in_phone,
                "address": self.walk_in_address,
            },
            "customer_name": self.customer_name(),
            "actor_id": self.actor_id,
            "branch_id": self.branch_id,
            "subtotal": _money(self.subtotal),
            "discount": _money(self.discount),
            "transport_fare": _money(self.transport_fare),
            "loading": _money(self.loading),
            "loading_and_offloading": _money(self.loading_and_offloading),
            "total": _money(self.total),
            "amount_paid": _money(self.amount_paid),
            "credit_applied": _money(self.credit_applied),
            "status": self.status,
            "payment_method": self.payment_method,
            "notes": self.notes,
            "waybill_number": self.waybill_number,
            "is_picked_up": self.is_picked_up,
            "pickup_date": to_utc_z(self.pickup_date) if self.pickup_date else None,
            "date": to_utc_z(self.date),
            "reference_transaction_id": self.reference_transaction_id,
            "reason": self.reason,
            "total_refunded_amount": _money(self.total_refunded_amount),
            "actual_amount_returned": _money(self.actual_amount_returned),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class TransactionItem(db.Model):
    """
    Immutable line snapshot.

    Product name, unit and price are copied at sale time so later catalog
    edits never change history. subtotal = quantity * unit_price - discount.
    """
    __tablename__ = "transaction_items"
    __table_args__ = (
        db.UniqueConstraint("transaction_id", "position", name="uq_transaction_items_position"),
        db.Index("ix_transaction_items_product", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    product_name = db.Column(db.String(255), nullable=False)

    quantity = db.Column(db.Numeric(20, 3), nullable=False)
    unit = db.Column(db.String(32), nullable=False)
    unit_price = db.Column(db.Numeric(20, 2), nullable=False)
    discount = db.Column(db.Numeric(20, 2), nullable=False, default=0)
    subtotal = db.Column(db.Numeric(20, 2), nullable=False)

    # RETURN: refund price = min(original_unit_price, current_unit_price)
    original_unit_price = db.Column(db.Numeric(20, 2), nullable=True)
    current_unit_price = db.Column(db.Numeric(20, 2), nullable=True)

    # WHOLESALE: negotiated price that replaced the catalog price
    wholesale_price = db.Column(db.Numeric(20, 2), nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "position": self.position,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": format_quantity(self.quantity),
            "unit": self.unit,
            "unit_price": _money(self.unit_price),
            "discount": _money(self.discount),
            "subtotal": _money(self.subtotal),
            "original_unit_price": _money(self.original_unit_price),
            "current_unit_price": _money(self.current_unit_price),
            "wholesale_price": _money(self.wholesale_price),
        }


class InvoiceCounter(db.Model):
    """
    Per year-month invoice sequence.

    `seq` is the last number handed out for `prefix` (INV2610 -> INV26100001,
    INV26100002, ...). Incremented with a single UPDATE inside the sale's unit.
    """
    __tablename__ = "invoice_counters"
    __table_args__ = (
        db.UniqueConstraint("prefix", name="uq_invoice_counters_prefix"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(16), nullable=False)
    seq = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "prefix": self.prefix,
            "seq": self.seq,
            "updated_at": to_utc_z(self.updated_at),
        }
