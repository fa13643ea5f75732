from __future__ import annotations

from ..extensions import db
from salesledger.decimal_utils import format_quantity, to_display
from salesledger.time_utils import to_utc_z


class Product(db.Model):
    """
    Catalog item with its on-hand quantity.

    STOCK INVARIANT:
    - stock >= 0 in every committed state.
    - stock only changes through services.stock_service inside an atomic unit.

    UNITS:
    - `unit` is the selling unit (BAG, KG, PIECE, ...). Sale lines must use the
      same unit; piece-like units only accept whole quantities.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_branch_name", "branch_id", "name"),
        db.Index("ix_products_branch_active", "branch_id", "is_active"),
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(32), nullable=False)
    # Catalog category, e.g. CEMENT; WHOLESALE is limited to WHOLESALE_CATEGORIES
    category = db.Column(db.String(64), nullable=True)

    unit_price = db.Column(db.Numeric(20, 2), nullable=False)
    stock = db.Column(db.Numeric(20, 3), nullable=False, default=0)
    min_stock_level = db.Column(db.Numeric(20, 3), nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Set by reconciliation corrections
    last_reconciled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reconciliation_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    branch = db.relationship("Branch", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} unit={self.unit} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "name": self.name,
            "unit": self.unit,
            "category": self.category,
            "unit_price": to_display(self.unit_price),
            "stock": format_quantity(self.stock),
            "min_stock_level": format_quantity(self.min_stock_level),
            "is_active": self.is_active,
            "last_reconciled_at": to_utc_z(self.last_reconciled_at) if self.last_reconciled_at else None,
            "reconciliation_reason": self.reconciliation_reason,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
