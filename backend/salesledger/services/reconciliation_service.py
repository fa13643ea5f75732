# Overview: Service-layer operations for stock reconciliation; reports and corrects stock drift.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Product, Transaction, TransactionItem
from ..models.transactions import STATUS_COMPLETED, TYPE_PICKUP, TYPE_PURCHASE
from salesledger import decimal_utils as D
from salesledger.errors import LedgerError, NotFoundError, StaleDiscrepancyError
from salesledger.identity import SYSTEM_ACTOR, Actor
from salesledger.time_utils import to_utc_z, utcnow
from .audit_service import record_audit
from .concurrency import execute_atomic
from .stock_service import get_locked_product, set_stock
from . import event_service

"""
SalesLedger Reconciliation Semantics (authoritative)

Expected stock:
- Starts from the stored stock snapshot, adds back every COMPLETED
  PURCHASE/PICKUP quantity for the product and subtracts the same
  quantities again. The stored figure is then re-read; any difference is a
  change made outside the engine while the product was being examined.

Correction:
- Each product is corrected in its own atomic unit.
- Stock already equal to the expected figure is skipped (idempotent).
- Stock that moved away from both report figures is left untouched and
  reported as failed.
"""

DEFAULT_REASON = "Stock reconciliation auto-correction"
STOCK_CONSUMING_TYPES = (TYPE_PURCHASE, TYPE_PICKUP)


@dataclass
class StockDiscrepancy:
    product_id: int
    product_name: str
    expected_stock: Decimal
    actual_stock: Decimal
    discrepancy: Decimal
    unit: str
    last_transaction_date: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "expected_stock": D.format_quantity(self.expected_stock),
            "actual_stock": D.format_quantity(self.actual_stock),
            "discrepancy": D.format_quantity(self.discrepancy),
            "unit": self.unit,
            "last_transaction_date": to_utc_z(self.last_transaction_date),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StockDiscrepancy":
        expected = D.to_decimal(data.get("expected_stock"), "expected_stock")
        actual = D.to_decimal(data.get("actual_stock"), "actual_stock")
        return cls(
            product_id=int(data["product_id"]),
            product_name=data.get("product_name") or "",
            expected_stock=expected,
            actual_stock=actual,
            discrepancy=D.subtract(actual, expected),
            unit=data.get("unit") or "",
        )


@dataclass
class ReconciliationReport:
    total_products: int = 0
    discrepancies: list[StockDiscrepancy] = field(default_factory=list)
    total_value: Decimal = D.ZERO
    affected_value: Decimal = D.ZERO
    reconciliation_date: datetime | None = None
    errors: list[dict] = field(default_factory=list)

    @property
    def discrepancies_found(self) -> int:
        return len(self.discrepancies)

    def to_dict(self) -> dict:
        return {
            "total_products": self.total_products,
            "discrepancies_found": self.discrepancies_found,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "total_value": D.to_display(self.total_value),
            "affected_value": D.to_display(self.affected_value),
            "reconciliation_date": to_utc_z(self.reconciliation_date),
            "errors": list(self.errors),
        }


@dataclass
class CorrectionResult:
    reason: str
    corrected: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "reason": self.reason,
            "corrected": list(self.corrected),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
        }


def _read_stored_stock(product_id: int) -> Decimal:
    stock = db.session.query(Product.stock).filter(Product.id == product_id).scalar()
    if stock is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return D.to_decimal(stock)


def _sold_quantities(product_id: int) -> list[Decimal]:
    rows = (
        db.session.query(TransactionItem.quantity)
        .join(Transaction, Transaction.id == TransactionItem.transaction_id)
        .filter(
            TransactionItem.product_id == product_id,
            Transaction.status == STATUS_COMPLETED,
            Transaction.type.in_(STOCK_CONSUMING_TYPES),
        )
        .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        .all()
    )
    return [D.to_decimal(q) for (q,) in rows]


def _last_transaction_date(product_id: int) -> datetime | None:
    return (
        db.session.query(func.max(Transaction.date))
        .join(TransactionItem, TransactionItem.transaction_id == Transaction.id)
        .filter(TransactionItem.product_id == product_id, Transaction.status == STATUS_COMPLETED)
        .scalar()
    )


def expected_stock(product_id: int) -> Decimal:
    """Snapshot with every recorded consumption added back and removed again."""
    expected = _read_stored_stock(product_id)
    sold = _sold_quantities(product_id)
    for quantity in sold:
        expected = D.add(expected, quantity)
    for quantity in sold:
        expected = D.subtract(expected, quantity)
    return expected


def reconcile(branch_id: int | None = None) -> ReconciliationReport:
    """Compare expected and stored stock for every product in scope."""
    current_app.logger.info("Starting stock reconciliation (branch=%s)", branch_id)

    query = db.session.query(Product.id, Product.name, Product.unit, Product.unit_price)
    if branch_id is not None:
        query = query.filter(Product.branch_id == branch_id)
    products = query.order_by(Product.id.asc()).all()

    report = ReconciliationReport(total_products=len(products), reconciliation_date=utcnow())

    for product_id, name, unit, unit_price in products:
        try:
            expected = expected_stock(product_id)
            actual = _read_stored_stock(product_id)
            price = D.to_decimal(unit_price)
            report.total_value = D.add(report.total_value, D.multiply(actual, price))

            delta = D.subtract(actual, expected)
            if D.is_zero(delta):
                continue

            report.discrepancies.append(StockDiscrepancy(
                product_id=product_id,
                product_name=name,
                expected_stock=expected,
                actual_stock=actual,
                discrepancy=delta,
                unit=unit,
                last_transaction_date=_last_transaction_date(product_id),
            ))
            report.affected_value = D.add(report.affected_value, D.multiply(D.absolute(delta), price))
            current_app.logger.warning(
                "Stock discrepancy for %s: expected %s, actual %s, difference %s %s",
                name, expected, actual, delta, unit,
            )
        except (LedgerError, SQLAlchemyError) as exc:
            current_app.logger.exception("Error reconciling stock for product %s", name)
            report.errors.append({"product_id": product_id, "product_name": name, "error": str(exc)})

    report.total_value = D.round_money(report.total_value)
    report.affected_value = D.round_money(report.affected_value)
    current_app.logger.info(
        "Stock reconciliation completed: %d discrepancies out of %d products",
        report.discrepancies_found, report.total_products,
    )
    return report


def auto_correct(discrepancies, reason: str | None = None, actor: Actor | None = None) -> CorrectionResult:
    """
    Set each product's stock to the expected figure of its discrepancy.

    Accepts StockDiscrepancy objects or their dict form.
    """
    actor = actor or SYSTEM_ACTOR
    reason = (reason or "").strip() or DEFAULT_REASON
    result = CorrectionResult(reason=reason)

    for item in discrepancies or []:
        try:
            discrepancy = item if isinstance(item, StockDiscrepancy) else StockDiscrepancy.from_dict(item)
        except (KeyError, TypeError, ValueError) as exc:
            result.failed.append({"product_id": None, "error": f"Invalid discrepancy: {exc}"})
            continue

        def _op(session, d=discrepancy):
            product = get_locked_product(session, d.product_id)
            current = D.to_decimal(product.stock)
            if D.eq(current, d.expected_stock):
                return None
            if not D.eq(current, d.actual_stock):
                raise StaleDiscrepancyError(
                    f"Stock for {product.name} changed since the report",
                    details={
                        "product_id": product.id,
                        "reported_stock": D.format_quantity(d.actual_stock),
                        "current_stock": D.format_quantity(current),
                    },
                )
            set_stock(session, product, d.expected_stock, reason)
            return product.branch_id, current

        try:
            outcome = execute_atomic(_op, label="auto_correct")
        except LedgerError as exc:
            current_app.logger.warning("Auto-correction skipped for product %s: %s", discrepancy.product_id, exc)
            result.failed.append({"product_id": discrepancy.product_id, "error": exc.message, "code": exc.code})
            continue

        if outcome is None:
            result.skipped.append(discrepancy.product_id)
            continue

        branch_id, previous = outcome
        result.corrected.append(discrepancy.product_id)
        current_app.logger.info(
            "Corrected stock for product %s: %s -> %s (%s)",
            discrepancy.product_id, previous, discrepancy.expected_stock, reason,
        )
        payload = {
            "product_id": discrepancy.product_id,
            "previous_stock": D.format_quantity(previous),
            "new_stock": D.format_quantity(discrepancy.expected_stock),
            "reason": reason,
        }
        record_audit(
            "STOCK_RECONCILED",
            actor=actor,
            entity_type="product",
            entity_id=discrepancy.product_id,
            branch_id=branch_id,
            details=f"Stock corrected from {payload['previous_stock']} to {payload['new_stock']}: {reason}",
            payload=payload,
        )
        event_service.emit(event_service.STOCK_RECONCILED, payload)

    return result


def _active_products(branch_id: int | None):
    query = db.session.query(Product).filter(Product.is_active.is_(True))
    if branch_id is not None:
        query = query.filter(Product.branch_id == branch_id)
    return query


def get_low_stock_products(branch_id: int | None = None) -> list[Product]:
    """In stock, but at or below the minimum level."""
    return (
        _active_products(branch_id)
        .filter(Product.stock > 0, Product.stock <= Product.min_stock_level)
        .order_by(Product.stock.asc(), Product.id.asc())
        .all()
    )


def get_zero_stock_products(branch_id: int | None = None) -> list[Product]:
    return _active_products(branch_id).filter(Product.stock <= 0).order_by(Product.id.asc()).all()


def generate_inventory_report(branch_id: int | None = None) -> dict:
    products = _active_products(branch_id).order_by(Product.name.asc(), Product.id.asc()).all()
    total_value = D.ZERO
    low = zero = 0
    rows = []
    for product in products:
        stock = D.to_decimal(product.stock)
        value = D.round_money(D.multiply(stock, product.unit_price))
        total_value = D.add(total_value, value)
        if D.lte(stock, 0):
            zero += 1
            state = "OUT_OF_STOCK"
        elif D.lte(stock, product.min_stock_level):
            low += 1
            state = "LOW"
        else:
            state = "OK"
        rows.append({
            "product_id": product.id,
            "name": product.name,
            "unit": product.unit,
            "stock": D.format_quantity(stock),
            "min_stock_level": D.format_quantity(product.min_stock_level),
            "unit_price": D.to_display(product.unit_price),
            "value": D.to_display(value),
            "state": state,
        })
    return {
        "branch_id": branch_id,
        "total_products": len(rows),
        "low_stock_count": low,
        "zero_stock_count": zero,
        "total_value": D.to_display(total_value),
        "products": rows,
        "generated_at": to_utc_z(utcnow()),
    }
