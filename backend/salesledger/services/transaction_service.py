# Overview: Service-layer operations for sales transactions; pricing, payment policy and the atomic write-set.

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import Client, Product, Transaction, TransactionItem
from ..models.transactions import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_PENDING,
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    TYPE_DEPOSIT,
    TYPE_PICKUP,
    TYPE_PURCHASE,
    TYPE_RETURN,
    TYPE_WHOLESALE,
)
from salesledger import decimal_utils as D
from salesledger.errors import (
    InsufficientStockError,
    InvalidCustomerReferenceError,
    InvalidDiscountError,
    InvalidTransactionError,
    NotFoundError,
    OverpaymentError,
    PaymentMismatchError,
    UnitMismatchError,
)
from salesledger.identity import Actor
from salesledger.time_utils import day_code, utcnow
from salesledger.validation import (
    accounting_date,
    clean_str,
    coerce_bool,
    coerce_datetime,
    coerce_int,
    reject_unknown_fields,
)
from .audit_service import record_audit
from .client_ledger_service import apply_ledger_entry, get_active_client
from .concurrency import execute_atomic, lock_for_update
from .invoice_service import allocate_invoice_number
from .stock_service import decrement_stock, get_locked_product, increment_stock
from . import event_service

"""
SalesLedger Transaction Invariants (authoritative)

Atomicity:
- A transaction row, its client ledger entry, its stock movements and its
  invoice counter increment commit together or not at all (execute_atomic).
- Audit entries and domain events run after the commit and never fail it.

Pricing:
- line.subtotal = quantity * unit_price - line.discount, exact; a line amount
  with more than two decimals is rejected, never rounded.
- subtotal = sum(line.subtotal); subtotal - discount is never negative.
- total = subtotal - discount + transport_fare + loading + loading_and_offloading.
  loading and loading_and_offloading are exclusive; DEPOSIT and RETURN carry
  no charges.
- Snapshots (product name, unit, price) are frozen at creation.

Payment policy (exact settlement):
- Walk-in (PURCHASE or PICKUP): amount_paid == total.
- Registered PURCHASE / WHOLESALE: credit = max(balance, 0);
  required = total - credit. If required <= 0 nothing may be paid,
  otherwise amount_paid == required.
- Registered PICKUP: nothing is paid at creation; the full total is debited
  and may push the balance negative. Later payments are top-ups.
- DEPOSIT and WHOLESALE need a registered client.
- WHOLESALE lines are limited to WHOLESALE_CATEGORIES products.

Returns:
- Only COMPLETED PURCHASE, PICKUP or WHOLESALE transactions can be returned.
- Cumulative returned quantity per product never exceeds the sold quantity.
- Refund price per unit = min(original net unit price, current catalog price).
  The refund line amount is rounded half-up to cents.
- Returned goods are restocked unless the original was WHOLESALE.
- The part of the refund not handed back in cash is credited to the client.
"""

STOCKED_TYPES = (TYPE_PURCHASE, TYPE_PICKUP)
REGISTERED_ONLY_TYPES = (TYPE_DEPOSIT, TYPE_WHOLESALE)
CHARGE_FIELDS = ("transport_fare", "loading", "loading_and_offloading")
RETURNABLE_TYPES = (TYPE_PURCHASE, TYPE_PICKUP, TYPE_WHOLESALE)

UPDATABLE_FIELDS = ("amount_paid", "is_picked_up", "pickup_date", "notes", "payment_method", "status")

DEFAULT_PAYMENT_METHOD = "CASH"


@dataclass
class PricedItem:
    product_id: int
    product_name: str
    quantity: Decimal
    unit: str
    unit_price: Decimal
    discount: Decimal
    subtotal: Decimal
    original_unit_price: Decimal | None = None
    current_unit_price: Decimal | None = None
    wholesale_price: Decimal | None = None

    def to_model(self, position: int) -> TransactionItem:
        return TransactionItem(
            position=position,
            product_id=self.product_id,
            product_name=self.product_name,
            quantity=self.quantity,
            unit=self.unit,
            unit_price=self.unit_price,
            discount=self.discount,
            subtotal=self.subtotal,
            original_unit_price=self.original_unit_price,
            current_unit_price=self.current_unit_price,
            wholesale_price=self.wholesale_price,
        )

    def to_dict(self) -> dict:
        data = {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": D.format_quantity(self.quantity),
            "unit": self.unit,
            "unit_price": D.to_display(self.unit_price),
            "discount": D.to_display(self.discount),
            "subtotal": D.to_display(self.subtotal),
        }
        if self.original_unit_price is not None:
            data["original_unit_price"] = D.to_display(self.original_unit_price)
            data["current_unit_price"] = D.to_display(self.current_unit_price)
        if self.wholesale_price is not None:
            data["wholesale_price"] = D.to_display(self.wholesale_price)
        return data


@dataclass
class PricingPreview:
    """Figures a cashier sees before committing; identical to what create would store."""
    type: str
    items: list[PricedItem] = field(default_factory=list)
    subtotal: Decimal = D.ZERO
    discount: Decimal = D.ZERO
    transport_fare: Decimal = D.ZERO
    loading: Decimal = D.ZERO
    loading_and_offloading: Decimal = D.ZERO
    total: Decimal = D.ZERO
    client_balance: Decimal | None = None
    required_payment: Decimal = D.ZERO
    can_use_credit_balance: bool = False
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "items": [item.to_dict() for item in self.items],
            "subtotal": D.to_display(self.subtotal),
            "discount": D.to_display(self.discount),
            "transport_fare": D.to_display(self.transport_fare),
            "loading": D.to_display(self.loading),
            "loading_and_offloading": D.to_display(self.loading_and_offloading),
            "total": D.to_display(self.total),
            "client_balance": D.to_display(self.client_balance) if self.client_balance is not None else None,
            "required_payment": D.to_display(self.required_payment),
            "can_use_credit_balance": self.can_use_credit_balance,
            "message": self.message,
        }


@dataclass
class _Customer:
    client: Client | None = None
    walk_in_name: str | None = None
    walk_in_phone: str | None = None
    walk_in_address: str | None = None

    @property
    def is_walk_in(self) -> bool:
        return self.client is None


# ---------------------------------------------------------------------------
# Parsing & pricing (shared by create and calculate)
# ---------------------------------------------------------------------------

def _parse_type(payload: dict) -> str:
    tx_type = str(payload.get("type") or "").strip().upper()
    if tx_type not in TRANSACTION_TYPES:
        raise InvalidTransactionError(
            f"type must be one of {', '.join(TRANSACTION_TYPES)}",
            details={"type": payload.get("type")},
        )
    return tx_type


def _piece_units():
    return current_app.config.get("PIECE_UNITS")


def _check_wholesale_category(product: Product) -> None:
    allowed = current_app.config.get("WHOLESALE_CATEGORIES") or frozenset()
    category = (product.category or "").strip().upper()
    if category not in allowed:
        raise InvalidTransactionError(
            f"WHOLESALE transactions are only allowed for {', '.join(sorted(allowed)) or 'no'} products; "
            f"{product.name} is not one",
            details={"product_id": product.id, "category": product.category},
        )


def _resolve_customer(session, payload: dict, tx_type: str, *, lock: bool) -> _Customer:
    """Exactly one of client_id or walk_in_client.name."""
    client_id = coerce_int(payload.get("client_id"), "client_id", required=False)
    walk_in = payload.get("walk_in_client") or None
    if walk_in is not None and not isinstance(walk_in, dict):
        raise InvalidCustomerReferenceError("walk_in_client must be an object")

    if client_id is not None and walk_in:
        raise InvalidCustomerReferenceError(
            "Provide either client_id or walk_in_client, not both",
            details={"client_id": client_id},
        )

    if client_id is not None:
        return _Customer(client=get_active_client(session, client_id, lock=lock))

    name = clean_str((walk_in or {}).get("name"), 255)
    if not name:
        raise InvalidCustomerReferenceError("Either client_id or walk_in_client.name must be provided")
    if tx_type in REGISTERED_ONLY_TYPES:
        raise InvalidCustomerReferenceError(
            f"{tx_type} transactions are only allowed for registered clients",
            details={"type": tx_type},
        )
    return _Customer(
        walk_in_name=name,
        walk_in_phone=clean_str(walk_in.get("phone"), 32),
        walk_in_address=clean_str(walk_in.get("address"), 255),
    )


def _load_product(session, product_id: int, *, lock: bool) -> Product:
    if lock:
        return get_locked_product(session, product_id)
    product = session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def _check_unit(requested, expected: str, product_id: int) -> str:
    if requested is None or str(requested).strip() == "":
        return expected
    unit = str(requested).strip().upper()
    if unit != expected.upper():
        raise UnitMismatchError(
            f"Unit mismatch for product {product_id}: expected {expected}, got {unit}",
            details={"product_id": product_id, "expected": expected, "provided": unit},
        )
    return expected


def _price_sale_items(session, tx_type: str, raw_items, *, lock: bool) -> list[PricedItem]:
    if not raw_items:
        raise InvalidTransactionError(f"Items are required for {tx_type} transactions")
    if not isinstance(raw_items, list):
        raise InvalidTransactionError("items must be a list")

    priced: list[PricedItem] = []
    requested: "OrderedDict[int, Decimal]" = OrderedDict()
    products: dict[int, Product] = {}

    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise InvalidTransactionError(f"items[{index}] must be an object")
        product_id = coerce_int(raw.get("product_id"), f"items[{index}].product_id")
        product = products.get(product_id) or _load_product(session, product_id, lock=lock)
        products[product_id] = product
        if not product.is_active:
            raise InvalidTransactionError(
                f"Product {product.name} is not available for sale",
                details={"product_id": product_id},
            )

        unit = _check_unit(raw.get("unit"), product.unit, product_id)
        quantity = D.validate_quantity(raw.get("quantity"), unit, f"items[{index}].quantity", _piece_units())
        discount = D.validate_money(raw.get("discount") or 0, f"items[{index}].discount")

        wholesale_price = None
        if tx_type == TYPE_WHOLESALE:
            _check_wholesale_category(product)
            if raw.get("wholesale_price") is None:
                raise InvalidTransactionError(
                    f"items[{index}].wholesale_price is required for WHOLESALE transactions",
                    details={"product_id": product_id},
                )
            wholesale_price = D.validate_money(raw.get("wholesale_price"), f"items[{index}].wholesale_price")
            if D.is_zero(wholesale_price):
                raise InvalidTransactionError(
                    f"items[{index}].wholesale_price must be greater than 0",
                    details={"product_id": product_id},
                )
            unit_price = wholesale_price
        else:
            unit_price = D.to_decimal(product.unit_price)

        gross = D.ensure_money_scale(D.multiply(quantity, unit_price), f"items[{index}] amount")
        subtotal = D.line_subtotal(quantity, unit_price, discount)
        if D.is_negative(subtotal):
            raise InvalidDiscountError(
                f"Discount for {product.name} exceeds the line amount",
                details={
                    "product_id": product_id,
                    "line_amount": D.to_display(gross),
                    "discount": D.to_display(discount),
                },
            )

        requested[product_id] = D.add(requested.get(product_id, D.ZERO), quantity)
        priced.append(PricedItem(
            product_id=product_id,
            product_name=product.name,
            quantity=quantity,
            unit=unit,
            unit_price=unit_price,
            discount=discount,
            subtotal=subtotal,
            wholesale_price=wholesale_price,
        ))

    if tx_type in STOCKED_TYPES:
        for product_id, quantity in requested.items():
            product = products[product_id]
            if D.gt(quantity, product.stock):
                raise InsufficientStockError(
                    f"Insufficient stock for {product.name}: available "
                    f"{D.format_quantity(product.stock)} {product.unit}, requested {D.format_quantity(quantity)}",
                    details={
                        "product_id": product_id,
                        "available": D.format_quantity(product.stock),
                        "requested": D.format_quantity(quantity),
                        "unit": product.unit,
                    },
                )
    return priced


def _parse_charges(payload: dict, tx_type: str) -> dict[str, Decimal]:
    """transport_fare, loading and loading_and_offloading; absent means 0."""
    charges = {name: D.validate_money(payload.get(name) or 0, name) for name in CHARGE_FIELDS}
    if D.gt(charges["loading"], 0) and D.gt(charges["loading_and_offloading"], 0):
        raise InvalidTransactionError(
            "Use either loading or loading_and_offloading, not both",
            details={
                "loading": D.to_display(charges["loading"]),
                "loading_and_offloading": D.to_display(charges["loading_and_offloading"]),
            },
        )
    if tx_type in (TYPE_DEPOSIT, TYPE_RETURN):
        applied = [name for name in CHARGE_FIELDS if D.gt(charges[name], 0)]
        if applied:
            raise InvalidTransactionError(
                f"{tx_type} transactions cannot carry additional charges",
                details={"fields": applied},
            )
    return charges


def _totals(items: list[PricedItem], raw_discount, charges: dict[str, Decimal] | None = None) -> dict:
    """subtotal, discount, net and total; see transaction_totals."""
    subtotal = D.ZERO
    for item in items:
        subtotal = D.add(subtotal, item.subtotal)
    discount = D.validate_money(raw_discount or 0, "discount")
    totals = D.transaction_totals(subtotal, discount, (charges or {}).values())
    if D.is_negative(totals["net"]):
        raise InvalidDiscountError(
            "Discount exceeds the subtotal",
            details={"subtotal": D.to_display(subtotal), "discount": D.to_display(discount)},
        )
    return totals


def _payment_terms(tx_type: str, customer: _Customer, total: Decimal) -> tuple[Decimal, Decimal, bool, str]:
    """(required_payment, credit_applied, can_use_credit_balance, message)."""
    if customer.is_walk_in:
        return total, D.ZERO, False, f"Walk-in client must pay the full amount: {D.to_display(total)}"

    balance = D.to_decimal(customer.client.balance or 0)
    if tx_type == TYPE_DEPOSIT:
        return total, D.ZERO, False, f"Deposit amount: {D.to_display(total)}"
    if tx_type == TYPE_PICKUP:
        return D.ZERO, D.ZERO, False, (
            f"PICKUP: no payment now; {D.to_display(total)} is charged to the account. "
            f"Current balance: {D.to_display(balance)}"
        )

    credit = D.minimum(D.maximum(balance, 0), total)
    required = D.subtract(total, credit)
    if D.is_zero(required):
        message = f"{tx_type}: balance {D.to_display(balance)} covers the total; pay 0"
    else:
        message = (
            f"{tx_type}: pay exactly {D.to_display(required)} "
            f"({D.to_display(credit)} drawn from balance {D.to_display(balance)})"
        )
    return required, credit, D.gt(credit, 0), message


def _enforce_payment(tx_type: str, customer: _Customer, required: Decimal, amount_paid: Decimal) -> None:
    details = {"required": D.to_display(required), "provided": D.to_display(amount_paid)}

    if customer.is_walk_in:
        if not D.eq(amount_paid, required):
            raise PaymentMismatchError(
                f"Walk-in client must pay the full amount: required {D.to_display(required)}, "
                f"provided {D.to_display(amount_paid)}",
                details=details,
            )
        return

    if tx_type == TYPE_PICKUP:
        if D.gt(amount_paid, 0):
            raise OverpaymentError(
                "PICKUP transactions take no payment at creation; record payments as top-ups",
                details=details,
            )
        return

    if D.is_zero(required):
        if D.gt(amount_paid, 0):
            raise OverpaymentError(
                f"Client balance covers the total; no payment is due (provided {D.to_display(amount_paid)})",
                details=details,
            )
        return

    if not D.eq(amount_paid, required):
        raise PaymentMismatchError(
            f"Payment must equal the amount due after credit: required {D.to_display(required)}, "
            f"provided {D.to_display(amount_paid)}",
            details=details,
        )


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------

def _load_original(session, reference_id: int, *, lock: bool) -> Transaction:
    query = session.query(Transaction).filter(Transaction.id == reference_id)
    original = (lock_for_update(query) if lock else query).first()
    if original is None:
        raise NotFoundError("Original transaction not found", details={"transaction_id": reference_id})
    if original.type not in RETURNABLE_TYPES:
        raise InvalidTransactionError(
            f"Cannot create a return for a {original.type} transaction",
            details={"transaction_id": original.id, "type": original.type},
        )
    if original.status != STATUS_COMPLETED:
        raise InvalidTransactionError(
            f"Only completed transactions can be returned (status {original.status})",
            details={"transaction_id": original.id, "status": original.status},
        )
    return original


def _already_returned(session, original_id: int) -> dict[int, Decimal]:
    rows = (
        session.query(TransactionItem.product_id, TransactionItem.quantity)
        .join(Transaction, Transaction.id == TransactionItem.transaction_id)
        .filter(
            Transaction.type == TYPE_RETURN,
            Transaction.reference_transaction_id == original_id,
            Transaction.status != STATUS_CANCELLED,
        )
        .all()
    )
    returned: dict[int, Decimal] = {}
    for product_id, quantity in rows:
        returned[product_id] = D.add(returned.get(product_id, D.ZERO), quantity)
    return returned


def _price_return_items(session, original: Transaction, raw_items, *, lock: bool) -> list[PricedItem]:
    if not raw_items or not isinstance(raw_items, list):
        raise InvalidTransactionError("items are required for RETURN transactions")

    sold: dict[int, dict] = {}
    for item in original.items:
        entry = sold.setdefault(item.product_id, {
            "quantity": D.ZERO,
            "subtotal": D.ZERO,
            "unit": item.unit,
            "name": item.product_name,
        })
        entry["quantity"] = D.add(entry["quantity"], item.quantity)
        entry["subtotal"] = D.add(entry["subtotal"], item.subtotal)

    returned = _already_returned(session, original.id)
    requested: dict[int, Decimal] = {}
    priced: list[PricedItem] = []

    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise InvalidTransactionError(f"items[{index}] must be an object")
        product_id = coerce_int(raw.get("product_id"), f"items[{index}].product_id")
        original_line = sold.get(product_id)
        if original_line is None:
            raise InvalidTransactionError(
                f"Product {product_id} was not in the original transaction",
                details={"product_id": product_id, "reference_transaction_id": original.id},
            )

        unit = _check_unit(raw.get("unit"), original_line["unit"], product_id)
        quantity = D.validate_quantity(raw.get("quantity"), unit, f"items[{index}].quantity", _piece_units())

        requested[product_id] = D.add(requested.get(product_id, D.ZERO), quantity)
        already = returned.get(product_id, D.ZERO)
        if D.gt(D.add(already, requested[product_id]), original_line["quantity"]):
            raise InvalidTransactionError(
                f"Return quantity for {original_line['name']} exceeds the purchased quantity",
                details={
                    "product_id": product_id,
                    "purchased": D.format_quantity(original_line["quantity"]),
                    "already_returned": D.format_quantity(already),
                    "requested": D.format_quantity(requested[product_id]),
                },
            )

        product = _load_product(session, product_id, lock=lock)
        original_price = D.round_money(D.divide(original_line["subtotal"], original_line["quantity"]))
        current_price = D.to_decimal(product.unit_price)
        refund_price = D.minimum(original_price, current_price)

        priced.append(PricedItem(
            product_id=product_id,
            product_name=original_line["name"],
            quantity=quantity,
            unit=unit,
            unit_price=refund_price,
            discount=D.ZERO,
            subtotal=D.round_money(D.multiply(quantity, refund_price)),
            original_unit_price=original_price,
            current_unit_price=current_price,
        ))
    return priced


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------

def calculate_transaction(payload: dict) -> PricingPreview:
    """
    Dry run of customer resolution, pricing, totals and payment terms.

    Reads only; takes no locks and does not require amount_paid to match.
    """
    payload = payload or {}
    session = db.session
    tx_type = _parse_type(payload)

    if tx_type == TYPE_RETURN:
        reference_id = coerce_int(payload.get("reference_transaction_id"), "reference_transaction_id")
        original = _load_original(session, reference_id, lock=False)
        _parse_charges(payload, tx_type)
        items = _price_return_items(session, original, payload.get("items"), lock=False)
        total = _totals(items, 0)["total"]
        balance = D.to_decimal(original.client.balance) if original.client is not None else None
        return PricingPreview(
            type=tx_type,
            items=items,
            subtotal=total,
            total=total,
            client_balance=balance,
            message=f"Refund due: {D.to_display(total)}",
        )

    customer = _resolve_customer(session, payload, tx_type, lock=False)
    items, totals, charges = _price_sale(session, payload, tx_type, lock=False)
    total = totals["total"]

    required, _, can_use_credit, message = _payment_terms(tx_type, customer, total)
    return PricingPreview(
        type=tx_type,
        items=items,
        subtotal=totals["subtotal"],
        discount=totals["discount"],
        total=total,
        **charges,
        client_balance=None if customer.is_walk_in else D.to_decimal(customer.client.balance),
        required_payment=required,
        can_use_credit_balance=can_use_credit,
        message=message,
    )


def _resolve_branch_id(payload: dict, actor: Actor, fallback: int | None) -> int:
    branch_id = coerce_int(payload.get("branch_id"), "branch_id", required=False)
    branch_id = branch_id or actor.branch_id or fallback
    if not branch_id:
        raise InvalidTransactionError("branch_id is required")
    return branch_id


def _price_sale(session, payload: dict, tx_type: str, *, lock: bool):
    """(items, totals, charges) for every type except RETURN."""
    charges = _parse_charges(payload, tx_type)
    if tx_type != TYPE_DEPOSIT:
        items = _price_sale_items(session, tx_type, payload.get("items"), lock=lock)
        return items, _totals(items, payload.get("discount"), charges), charges

    if payload.get("items"):
        raise InvalidTransactionError("DEPOSIT transactions cannot have items")
    amount = D.validate_money(payload.get("amount_paid") or 0, "amount_paid")
    if D.is_zero(amount):
        raise InvalidTransactionError("Deposit amount must be greater than 0")
    return [], D.transaction_totals(amount), charges


def _build_sale(session, payload: dict, actor: Actor, tx_type: str) -> Transaction:
    customer = _resolve_customer(session, payload, tx_type, lock=True)
    amount_paid = D.validate_money(payload.get("amount_paid") or 0, "amount_paid")

    items, totals, charges = _price_sale(session, payload, tx_type, lock=True)
    subtotal, discount, total = totals["subtotal"], totals["discount"], totals["total"]
    credit_applied = D.ZERO
    if tx_type != TYPE_DEPOSIT:
        required, credit_applied, _, _ = _payment_terms(tx_type, customer, total)
        _enforce_payment(tx_type, customer, required, amount_paid)

    date = accounting_date(payload.get("date"))
    client = customer.client
    tx = Transaction(
        invoice_number=allocate_invoice_number(session, date),
        type=tx_type,
        client_id=client.id if client else None,
        walk_in_name=customer.walk_in_name,
        walk_in_phone=customer.walk_in_phone,
        walk_in_address=customer.walk_in_address,
        actor_id=actor.id,
        branch_id=_resolve_branch_id(payload, actor, client.branch_id if client else None),
        subtotal=subtotal,
        discount=discount,
        total=total,
        amount_paid=amount_paid,
        credit_applied=credit_applied,
        **charges,
        status=STATUS_COMPLETED,
        payment_method=clean_str(payload.get("payment_method"), 32) or DEFAULT_PAYMENT_METHOD,
        notes=clean_str(payload.get("notes")),
        date=date,
    )
    tx.items = [item.to_model(position) for position, item in enumerate(items, start=1)]
    session.add(tx)
    session.flush()

    if client is not None:
        ledger_type = tx_type
        ledger_amount = amount_paid if tx_type == TYPE_DEPOSIT else total
        apply_ledger_entry(
            session,
            client,
            ledger_type,
            ledger_amount,
            description=f"{tx_type.title()} - Invoice #{tx.invoice_number}",
            reference=tx.invoice_number,
            date=date,
        )

    if tx_type in STOCKED_TYPES:
        for item in items:
            decrement_stock(session, item.product_id, item.quantity)

    return tx


def _build_return(session, payload: dict, actor: Actor) -> Transaction:
    reference_id = coerce_int(payload.get("reference_transaction_id"), "reference_transaction_id")
    reason = clean_str(payload.get("reason"), 255)
    if not reason:
        raise InvalidTransactionError("reason is required for RETURN transactions")
    if payload.get("actual_amount_returned") is None:
        raise InvalidTransactionError("actual_amount_returned is required for RETURN transactions")
    actual_returned = D.validate_money(payload.get("actual_amount_returned"), "actual_amount_returned")

    _parse_charges(payload, TYPE_RETURN)

    original = _load_original(session, reference_id, lock=True)
    items = _price_return_items(session, original, payload.get("items"), lock=True)
    total_refunded = _totals(items, 0)["total"]

    if D.gt(actual_returned, total_refunded):
        raise InvalidTransactionError(
            "actual_amount_returned exceeds the refundable amount",
            details={"refundable": D.to_display(total_refunded), "provided": D.to_display(actual_returned)},
        )
    if original.client_id is None and not D.eq(actual_returned, total_refunded):
        raise InvalidTransactionError(
            "Walk-in returns must be refunded in full",
            details={"refundable": D.to_display(total_refunded), "provided": D.to_display(actual_returned)},
        )

    client = None
    if original.client_id is not None:
        # Store credit still goes to a suspended client
        client = lock_for_update(session.query(Client).filter(Client.id == original.client_id)).first()

    date = accounting_date(payload.get("date"))
    tx = Transaction(
        invoice_number=allocate_invoice_number(session, date),
        type=TYPE_RETURN,
        client_id=original.client_id,
        walk_in_name=original.walk_in_name,
        walk_in_phone=original.walk_in_phone,
        walk_in_address=original.walk_in_address,
        actor_id=actor.id,
        branch_id=coerce_int(payload.get("branch_id"), "branch_id", required=False) or original.branch_id,
        subtotal=total_refunded,
        discount=D.ZERO,
        total=total_refunded,
        amount_paid=D.ZERO,
        credit_applied=D.ZERO,
        status=STATUS_COMPLETED,
        payment_method=clean_str(payload.get("payment_method"), 32) or DEFAULT_PAYMENT_METHOD,
        notes=clean_str(payload.get("notes")),
        date=date,
        reference_transaction_id=original.id,
        reason=reason,
        total_refunded_amount=total_refunded,
        actual_amount_returned=actual_returned,
    )
    tx.items = [item.to_model(position) for position, item in enumerate(items, start=1)]
    session.add(tx)
    session.flush()

    store_credit = D.subtract(total_refunded, actual_returned)
    if client is not None and D.gt(store_credit, 0):
        apply_ledger_entry(
            session,
            client,
            TYPE_RETURN,
            store_credit,
            description=f"Return for Invoice #{original.invoice_number} - Reason: {reason}",
            reference=tx.invoice_number,
            date=date,
        )

    if original.type != TYPE_WHOLESALE:
        for item in items:
            increment_stock(session, item.product_id, item.quantity)

    return tx


def _event_payload(tx: Transaction, client_balance: Decimal | None) -> dict:
    return {
        "transaction_id": tx.id,
        "invoice_number": tx.invoice_number,
        "type": tx.type,
        "status": tx.status,
        "client_id": tx.client_id,
        "branch_id": tx.branch_id,
        "total": D.to_display(tx.total),
        "amount_paid": D.to_display(tx.amount_paid),
        "client_balance": D.to_display(client_balance) if client_balance is not None else None,
    }


def create_transaction(payload: dict, actor: Actor) -> tuple[Transaction, Decimal | None]:
    """
    Create a transaction of any type as one atomic unit.

    Returns (transaction, client balance after commit); the balance is None
    for walk-in customers. Validation errors roll everything back.
    """
    payload = payload or {}
    tx_type = _parse_type(payload)

    def _op(session):
        if tx_type == TYPE_RETURN:
            return _build_return(session, payload, actor)
        return _build_sale(session, payload, actor, tx_type)

    tx = execute_atomic(_op, label=f"create_transaction:{tx_type}")

    client_balance = None
    if tx.client_id is not None:
        client_balance = D.to_decimal(db.session.get(Client, tx.client_id).balance)

    current_app.logger.info(
        "Transaction %s created: type=%s total=%s paid=%s client=%s",
        tx.invoice_number, tx.type, tx.total, tx.amount_paid, tx.client_id,
    )

    payload_out = _event_payload(tx, client_balance)
    record_audit(
        "TRANSACTION_CREATED",
        actor=actor,
        entity_type="transaction",
        entity_id=tx.id,
        branch_id=tx.branch_id,
        details=f"{tx.type} {tx.invoice_number} for {tx.customer_name()}: total {D.to_display(tx.total)}",
        payload=payload_out,
    )
    event_service.emit(event_service.TRANSACTION_CREATED, payload_out)
    return tx, client_balance


def _apply_top_up(session, tx: Transaction, raw_amount) -> Decimal:
    if tx.type in (TYPE_DEPOSIT, TYPE_RETURN):
        raise InvalidTransactionError(f"Payments cannot be added to {tx.type} transactions")
    top_up = D.validate_money(raw_amount, "amount_paid")
    if D.is_zero(top_up):
        raise InvalidTransactionError("amount_paid must be greater than 0")

    settled = D.add(tx.amount_paid, tx.credit_applied or 0)
    outstanding = D.subtract(tx.total, settled)
    if D.gt(top_up, outstanding):
        raise OverpaymentError(
            "Payment amount exceeds the outstanding total",
            details={"outstanding": D.to_display(D.maximum(outstanding, 0)), "provided": D.to_display(top_up)},
        )

    tx.amount_paid = D.add(tx.amount_paid, top_up)

    if tx.type == TYPE_PICKUP and tx.client_id is not None:
        client = lock_for_update(session.query(Client).filter(Client.id == tx.client_id)).first()
        apply_ledger_entry(
            session,
            client,
            TYPE_DEPOSIT,
            top_up,
            description=f"Payment for Invoice #{tx.invoice_number}",
            reference=tx.invoice_number,
            date=utcnow(),
        )
        tx.status = STATUS_COMPLETED
    else:
        fully_paid = D.gte(D.add(settled, top_up), tx.total)
        tx.status = STATUS_COMPLETED if fully_paid else STATUS_PENDING
    return top_up


def update_transaction(transaction_id: int, patch: dict, actor: Actor) -> Transaction:
    """
    Apply a partial update: payment top-up, pickup confirmation, notes,
    payment method or cancellation of a PENDING transaction.

    Every other field is immutable.
    """
    patch = patch or {}
    if not isinstance(patch, dict):
        raise InvalidTransactionError("Invalid JSON payload")
    reject_unknown_fields(patch, UPDATABLE_FIELDS)
    if not patch:
        raise InvalidTransactionError("Nothing to update")

    def _op(session):
        query = session.query(Transaction).filter(Transaction.id == transaction_id)
        tx = lock_for_update(query).first()
        if tx is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", details={"transaction_id": transaction_id})
        if tx.status == STATUS_CANCELLED:
            raise InvalidTransactionError("Cancelled transactions cannot be modified")

        changes = {}

        if "status" in patch:
            status = str(patch["status"] or "").strip().upper()
            if status != STATUS_CANCELLED:
                raise InvalidTransactionError("status can only be changed to CANCELLED", details={"status": status})
            if tx.status != STATUS_PENDING:
                raise InvalidTransactionError(
                    f"Only PENDING transactions can be cancelled (status {tx.status})",
                    details={"status": tx.status},
                )
            if patch.get("amount_paid") is not None:
                raise InvalidTransactionError(
                    "A payment cannot be recorded on a transaction that is being cancelled",
                    details={"status": STATUS_CANCELLED, "amount_paid": str(patch["amount_paid"])},
                )

        if patch.get("amount_paid") is not None:
            changes["amount_paid"] = D.to_display(_apply_top_up(session, tx, patch["amount_paid"]))

        if "is_picked_up" in patch:
            picked_up = coerce_bool(patch["is_picked_up"], "is_picked_up")
            if tx.type in (TYPE_DEPOSIT, TYPE_RETURN):
                raise InvalidTransactionError(f"{tx.type} transactions have no goods to pick up")
            if not picked_up and tx.is_picked_up:
                raise InvalidTransactionError("Pickup confirmation cannot be undone")
            if picked_up and not tx.is_picked_up:
                tx.is_picked_up = True
                tx.pickup_date = coerce_datetime(patch.get("pickup_date"), "pickup_date") or utcnow()
                changes["is_picked_up"] = True
        elif "pickup_date" in patch:
            raise InvalidTransactionError("pickup_date can only be set together with is_picked_up")

        if "notes" in patch:
            tx.notes = clean_str(patch["notes"])
            changes["notes"] = tx.notes
        if "payment_method" in patch:
            tx.payment_method = clean_str(patch["payment_method"], 32)
            changes["payment_method"] = tx.payment_method

        if "status" in patch:
            tx.status = STATUS_CANCELLED
            changes["status"] = STATUS_CANCELLED

        return tx, changes

    tx, changes = execute_atomic(_op, label="update_transaction")
    current_app.logger.info("Transaction %s updated: %s", tx.invoice_number, ", ".join(changes) or "no changes")

    client_balance = None
    if tx.client_id is not None:
        client_balance = D.to_decimal(db.session.get(Client, tx.client_id).balance)
    payload_out = dict(_event_payload(tx, client_balance), changes=changes)
    record_audit(
        "TRANSACTION_UPDATED",
        actor=actor,
        entity_type="transaction",
        entity_id=tx.id,
        branch_id=tx.branch_id,
        details=f"Transaction {tx.invoice_number} updated - Changes: {', '.join(changes)}",
        payload=payload_out,
    )
    event_service.emit(event_service.TRANSACTION_UPDATED, payload_out)
    return tx


def get_transaction(transaction_id: int) -> Transaction:
    tx = db.session.get(Transaction, transaction_id)
    if tx is None:
        raise NotFoundError(f"Transaction {transaction_id} not found", details={"transaction_id": transaction_id})
    return tx


def list_transactions(filters: dict | None = None, page: int = 1, per_page: int = 50) -> tuple[list[Transaction], dict]:
    filters = filters or {}
    page = max(1, int(page))
    per_page = min(max(1, int(per_page)), 500)

    query = db.session.query(Transaction)
    if filters.get("client_id") is not None:
        query = query.filter(Transaction.client_id == filters["client_id"])
    if filters.get("branch_id") is not None:
        query = query.filter(Transaction.branch_id == filters["branch_id"])
    if filters.get("type"):
        query = query.filter(Transaction.type == _parse_type({"type": filters["type"]}))
    if filters.get("status"):
        status = str(filters["status"]).strip().upper()
        if status not in TRANSACTION_STATUSES:
            raise InvalidTransactionError(
                f"status must be one of {', '.join(TRANSACTION_STATUSES)}",
                details={"status": filters["status"]},
            )
        query = query.filter(Transaction.status == status)
    if filters.get("invoice_prefix"):
        query = query.filter(Transaction.invoice_number.startswith(str(filters["invoice_prefix"]).upper()))
    if filters.get("is_picked_up") is not None:
        query = query.filter(Transaction.is_picked_up.is_(bool(filters["is_picked_up"])))
    if filters.get("start"):
        query = query.filter(Transaction.date >= filters["start"])
    if filters.get("end"):
        query = query.filter(Transaction.date <= filters["end"])

    total = query.count()
    rows = (
        query.order_by(Transaction.date.desc(), Transaction.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return rows, {
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": (total + per_page - 1) // per_page,
    }


def generate_waybill_number(when: datetime | None = None, session=None) -> str:
    """WB{YYYYMMDD}-{n:04}; a preview derived from the day's count, not reserved."""
    session = session or db.session
    prefix = f"WB{day_code(when)}"
    count = session.query(Transaction).filter(Transaction.waybill_number.startswith(prefix)).count()
    return f"{prefix}-{count + 1:04d}"


def assign_waybill_number(transaction_id: int, waybill_number: str | None, actor: Actor) -> Transaction:
    def _op(session):
        tx = lock_for_update(session.query(Transaction).filter(Transaction.id == transaction_id)).first()
        if tx is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", details={"transaction_id": transaction_id})
        if tx.status == STATUS_CANCELLED:
            raise InvalidTransactionError("Cancelled transactions cannot be modified")
        tx.waybill_number = clean_str(waybill_number, 32) or generate_waybill_number(session=session)
        return tx

    tx = execute_atomic(_op, label="assign_waybill_number")
    payload_out = {"transaction_id": tx.id, "invoice_number": tx.invoice_number, "waybill_number": tx.waybill_number}
    record_audit(
        "WAYBILL_ASSIGNED",
        actor=actor,
        entity_type="transaction",
        entity_id=tx.id,
        branch_id=tx.branch_id,
        details=f"Waybill number {tx.waybill_number} assigned to transaction {tx.invoice_number}",
        payload=payload_out,
    )
    event_service.emit(event_service.TRANSACTION_UPDATED, payload_out)
    return tx


def generate_sales_report(start: datetime, end: datetime, branch_id: int | None = None) -> dict:
    """
    Totals and per-product breakdown for [start, end]; CANCELLED excluded.

    total_sales, total_discount, total_charges and the product breakdown cover PURCHASE,
    PICKUP and WHOLESALE. Deposits and returns are reported separately.
    """
    query = db.session.query(Transaction).filter(
        Transaction.date >= start,
        Transaction.date <= end,
        Transaction.status != STATUS_CANCELLED,
    )
    if branch_id is not None:
        query = query.filter(Transaction.branch_id == branch_id)

    total_sales = total_discount = total_charges = total_received = D.ZERO
    total_deposits = total_refunded = refunds_paid = D.ZERO
    products: "OrderedDict[int, dict]" = OrderedDict()
    count = 0

    for tx in query.order_by(Transaction.date.asc(), Transaction.id.asc()).all():
        count += 1
        if tx.type == TYPE_DEPOSIT:
            total_deposits = D.add(total_deposits, tx.total)
            total_received = D.add(total_received, tx.amount_paid)
            continue
        if tx.type == TYPE_RETURN:
            total_refunded = D.add(total_refunded, tx.total)
            refunds_paid = D.add(refunds_paid, tx.actual_amount_returned or 0)
            continue

        total_sales = D.add(total_sales, tx.total)
        total_discount = D.add(total_discount, tx.discount)
        for charge in CHARGE_FIELDS:
            total_charges = D.add(total_charges, getattr(tx, charge) or 0)
        total_received = D.add(total_received, tx.amount_paid)
        for item in tx.items:
            stats = products.setdefault(item.product_id, {
                "product_id": item.product_id,
                "product_name": item.product_name,
                "quantity": D.ZERO,
                "revenue": D.ZERO,
                "units": {},
            })
            stats["quantity"] = D.add(stats["quantity"], item.quantity)
            stats["revenue"] = D.add(stats["revenue"], item.subtotal)
            stats["units"][item.unit] = D.add(stats["units"].get(item.unit, D.ZERO), item.quantity)

    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "branch_id": branch_id,
        "transaction_count": count,
        "total_sales": D.to_display(total_sales),
        "total_discount": D.to_display(total_discount),
        "total_charges": D.to_display(total_charges),
        "total_received": D.to_display(total_received),
        "total_deposits": D.to_display(total_deposits),
        "total_refunded": D.to_display(total_refunded),
        "refunds_paid": D.to_display(refunds_paid),
        "products": [
            {
                "product_id": stats["product_id"],
                "product_name": stats["product_name"],
                "quantity": D.format_quantity(stats["quantity"]),
                "revenue": D.to_display(stats["revenue"]),
                "units": {unit: D.format_quantity(qty) for unit, qty in stats["units"].items()},
            }
            for stats in products.values()
        ],
    }
