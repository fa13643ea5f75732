# Overview: Service-layer operations for product stock; the only writer of Product.stock.

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import Product
from salesledger import decimal_utils as D
from salesledger.errors import InsufficientStockError, InvalidDecimalError, NotFoundError
from salesledger.identity import Actor
from salesledger.time_utils import utcnow
from .audit_service import record_audit
from .concurrency import execute_atomic, lock_for_update

"""
SalesLedger Stock Invariants (authoritative)

- Product.stock >= 0 in every committed state; every decrement re-checks
  availability against the locked row at write time.
- Stock changes happen only inside an atomic unit (execute_atomic); the
  session helpers below never commit.
- Unit compatibility is checked by the caller before quantities arrive here.
"""


def get_locked_product(session, product_id: int) -> Product:
    product = lock_for_update(session.query(Product).filter(Product.id == product_id)).first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def decrement_stock(session, product_id: int, quantity: Decimal) -> Product:
    """Remove quantity from on-hand stock; InsufficientStockError if it would go negative."""
    quantity = D.ensure_positive(quantity, "quantity")
    product = get_locked_product(session, product_id)
    if D.gt(quantity, product.stock):
        raise InsufficientStockError(
            f"Insufficient stock for {product.name}: available {D.format_quantity(product.stock)} "
            f"{product.unit}, requested {D.format_quantity(quantity)}",
            details={
                "product_id": product.id,
                "available": D.format_quantity(product.stock),
                "requested": D.format_quantity(quantity),
                "unit": product.unit,
            },
        )
    product.stock = D.subtract(product.stock, quantity)
    return product


def increment_stock(session, product_id: int, quantity: Decimal) -> Product:
    quantity = D.ensure_positive(quantity, "quantity")
    product = get_locked_product(session, product_id)
    product.stock = D.add(product.stock, quantity)
    return product


def set_stock(session, product: Product, quantity: Decimal, reason: str | None = None) -> Product:
    """Overwrite stock (reconciliation only); tags the product with the reason."""
    quantity = D.to_decimal(quantity, "stock")
    if D.is_negative(quantity):
        raise InvalidDecimalError(
            f"Stock cannot be negative: {quantity}",
            details={"product_id": product.id, "stock": D.format_quantity(quantity)},
        )
    product.stock = quantity
    product.last_reconciled_at = utcnow()
    product.reconciliation_reason = (reason or "")[:255] or None
    return product


def restock(product_id: int, quantity, actor: Actor, note: str | None = None) -> Product:
    """Manual restock in its own unit; audit STOCK_RESTOCKED after commit."""
    def _op(session):
        product = get_locked_product(session, product_id)
        qty = D.validate_quantity(
            quantity, product.unit, "quantity", current_app.config.get("PIECE_UNITS")
        )
        before = product.stock
        increment_stock(session, product_id, qty)
        return product, before, qty

    product, before, qty = execute_atomic(_op, label="restock")
    current_app.logger.info(
        "Restocked product %s by %s (%s -> %s)", product.id, qty, before, product.stock
    )
    record_audit(
        "STOCK_RESTOCKED",
        actor=actor,
        entity_type="product",
        entity_id=product.id,
        branch_id=product.branch_id,
        details=note or f"Restocked {D.format_quantity(qty)} {product.unit}",
        payload={
            "quantity": D.format_quantity(qty),
            "stock_before": D.format_quantity(before),
            "stock_after": D.format_quantity(product.stock),
        },
    )
    return product
