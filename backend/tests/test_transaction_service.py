"""
Sales transaction engine tests.

Verifies:
- Exact-settlement payment policy for walk-in and registered clients
- PICKUP debits the full total and may push the balance negative
- Pricing, unit and discount validation
- All-or-nothing writes (fault injection leaves no trace)
- calculate_transaction figures match what create_transaction stores
"""

from decimal import Decimal

import pytest

from salesledger.errors import (
    InsufficientStockError,
    InvalidCustomerReferenceError,
    InvalidDecimalError,
    InvalidDiscountError,
    InvalidTransactionError,
    OverpaymentError,
    PaymentMismatchError,
    SuspendedClientError,
    UnitMismatchError,
)
from salesledger.models import AuditLogEntry, Client, ClientLedgerEntry, InvoiceCounter, Product, Transaction
from salesledger.services import transaction_service
from salesledger.time_utils import parse_iso_datetime

from conftest import make_funded_client


DATE = "2026-10-05T10:00:00Z"


def purchase(client_id=None, items=None, amount_paid="0", walk_in=None, tx_type="PURCHASE", **extra):
    payload = {"type": tx_type, "items": items or [], "amount_paid": amount_paid, "date": DATE}
    if client_id is not None:
        payload["client_id"] = client_id
    if walk_in is not None:
        payload["walk_in_client"] = walk_in
    payload.update(extra)
    return payload


def rod_items(rod, quantity):
    return [{"product_id": rod.id, "quantity": quantity, "unit": "KG"}]


# =============================================================================
# PAYMENT POLICY
# =============================================================================


class TestRegisteredPurchasePayment:
    """balance 50, total 120: exactly 70 must be paid."""

    @pytest.mark.parametrize("paid", ["69", "71", "0", "120"])
    def test_anything_but_the_difference_is_rejected(self, db_session, funded_customer, rod, staff, paid):
        with pytest.raises(PaymentMismatchError) as exc:
            transaction_service.create_transaction(
                purchase(funded_customer.id, rod_items(rod, "9.6"), paid), staff
            )
        assert exc.value.details["required"] == "70.00"
        assert "70.00" in exc.value.message
        assert db_session.query(Transaction).count() == 0

    def test_exact_difference_is_accepted(self, db_session, funded_customer, rod, staff):
        tx, balance = transaction_service.create_transaction(
            purchase(funded_customer.id, rod_items(rod, "9.6"), "70"), staff
        )

        assert tx.total == Decimal("120.00")
        assert tx.amount_paid == Decimal("70.00")
        assert tx.credit_applied == Decimal("50.00")
        assert tx.status == "COMPLETED"
        assert balance == Decimal("0.00")

        entry = db_session.query(ClientLedgerEntry).filter_by(type="PURCHASE").one()
        assert entry.amount == Decimal("120.00")
        assert entry.balance_before == Decimal("50.00")
        assert entry.balance_after == Decimal("0.00")
        assert entry.reference == tx.invoice_number

    def test_balance_covering_total_takes_no_payment(self, db_session, branch, rod, staff):
        rich = make_funded_client(db_session, branch, staff, "200.00")
        with pytest.raises(OverpaymentError):
            transaction_service.create_transaction(purchase(rich.id, rod_items(rod, "9.6"), "1"), staff)

        tx, balance = transaction_service.create_transaction(purchase(rich.id, rod_items(rod, "9.6"), "0"), staff)
        assert tx.amount_paid == Decimal("0.00")
        assert balance == Decimal("80.00")

    def test_zero_balance_pays_full_total(self, db_session, customer, cement, staff):
        items = [{"product_id": cement.id, "quantity": 2}]
        tx, balance = transaction_service.create_transaction(purchase(customer.id, items, "200.00"), staff)
        assert tx.credit_applied == Decimal("0.00")
        assert balance == Decimal("0.00")


class TestWalkIn:

    WALK_IN = {"name": "Mr. Okafor", "phone": "0802 000 1111"}

    def test_exact_payment_succeeds(self, db_session, cement, staff):
        items = [{"product_id": cement.id, "quantity": 2}]
        tx, balance = transaction_service.create_transaction(
            purchase(items=items, amount_paid="200.00", walk_in=self.WALK_IN), staff
        )
        assert balance is None
        assert tx.client_id is None
        assert tx.customer_name() == "Mr. Okafor"
        assert db_session.query(ClientLedgerEntry).count() == 0

    @pytest.mark.parametrize("paid", ["199.99", "200.01"])
    def test_any_difference_fails(self, db_session, cement, staff, paid):
        items = [{"product_id": cement.id, "quantity": 2}]
        with pytest.raises(PaymentMismatchError):
            transaction_service.create_transaction(purchase(items=items, amount_paid=paid, walk_in=self.WALK_IN), staff)

    def test_pickup_pays_in_full(self, db_session, rod, staff):
        items = [{"product_id": rod.id, "quantity": 2}]
        tx, balance = transaction_service.create_transaction(
            purchase(items=items, amount_paid="25.00", walk_in={"name": "Passer-by"}, tx_type="PICKUP"), staff
        )

        assert balance is None
        assert tx.type == "PICKUP"
        assert tx.walk_in_name == "Passer-by"
        assert tx.amount_paid == Decimal("25.00")
        assert db_session.get(Product, rod.id).stock == Decimal("98.5")
        assert db_session.query(ClientLedgerEntry).count() == 0

    @pytest.mark.parametrize("paid", ["0", "24.99", "25.01"])
    def test_pickup_any_difference_fails(self, db_session, rod, staff, paid):
        items = [{"product_id": rod.id, "quantity": 2}]
        with pytest.raises(PaymentMismatchError):
            transaction_service.create_transaction(
                purchase(items=items, amount_paid=paid, walk_in={"name": "Passer-by"}, tx_type="PICKUP"), staff
            )
        assert db_session.get(Product, rod.id).stock == Decimal("100.5")

    @pytest.mark.parametrize("tx_type", ["WHOLESALE", "DEPOSIT"])
    def test_registered_only_types(self, db_session, cement, staff, tx_type):
        items = [{"product_id": cement.id, "quantity": 1, "wholesale_price": "90"}]
        with pytest.raises(InvalidCustomerReferenceError):
            transaction_service.create_transaction(
                purchase(items=items, amount_paid="100", walk_in=self.WALK_IN, tx_type=tx_type), staff
            )


class TestCustomerReference:

    def test_both_client_and_walk_in(self, db_session, customer, cement, staff):
        items = [{"product_id": cement.id, "quantity": 1}]
        with pytest.raises(InvalidCustomerReferenceError):
            transaction_service.create_transaction(
                purchase(customer.id, items, "100", walk_in={"name": "Someone"}), staff
            )

    def test_neither(self, db_session, cement, staff):
        items = [{"product_id": cement.id, "quantity": 1}]
        with pytest.raises(InvalidCustomerReferenceError):
            transaction_service.create_transaction(purchase(items=items, amount_paid="100"), staff)

    def test_suspended_client(self, db_session, suspended_customer, cement, staff):
        items = [{"product_id": cement.id, "quantity": 1}]
        with pytest.raises(SuspendedClientError):
            transaction_service.create_transaction(purchase(suspended_customer.id, items, "100"), staff)


class TestPickup:

    def test_pickup_debits_into_negative(self, db_session, customer, rod, staff):
        tx, balance = transaction_service.create_transaction(
            purchase(customer.id, rod_items(rod, "2.4"), tx_type="PICKUP"), staff
        )
        assert tx.total == Decimal("30.00")
        assert tx.amount_paid == Decimal("0.00")
        assert balance == Decimal("-30.00")
        assert db_session.get(Product, rod.id).stock == Decimal("98.100")

    def test_pickup_draws_credit_first(self, db_session, funded_customer, rod, staff):
        _, balance = transaction_service.create_transaction(
            purchase(funded_customer.id, rod_items(rod, "9.6"), tx_type="PICKUP"), staff
        )
        assert balance == Decimal("-70.00")

    def test_pickup_takes_no_payment(self, db_session, customer, rod, staff):
        with pytest.raises(OverpaymentError):
            transaction_service.create_transaction(
                purchase(customer.id, rod_items(rod, "2.4"), "30", tx_type="PICKUP"), staff
            )


class TestDeposit:

    def test_deposit_transaction(self, db_session, customer, staff):
        tx, balance = transaction_service.create_transaction(
            {"type": "DEPOSIT", "client_id": customer.id, "amount_paid": "500.00"}, staff
        )
        assert tx.total == Decimal("500.00")
        assert tx.items == []
        assert balance == Decimal("500.00")

    def test_deposit_requires_amount(self, db_session, customer, staff):
        with pytest.raises(InvalidTransactionError):
            transaction_service.create_transaction({"type": "DEPOSIT", "client_id": customer.id}, staff)

    def test_deposit_rejects_items(self, db_session, customer, cement, staff):
        with pytest.raises(InvalidTransactionError):
            transaction_service.create_transaction(
                {"type": "DEPOSIT", "client_id": customer.id, "amount_paid": "5",
                 "items": [{"product_id": cement.id, "quantity": 1}]},
                staff,
            )


# =============================================================================
# PRICING & VALIDATION
# =============================================================================


class TestPricing:

    def test_totals_are_exact(self, db_session, customer, cement, rod, staff):
        items = [
            {"product_id": cement.id, "quantity": 3, "discount": "10.00"},
            {"product_id": rod.id, "quantity": "2.5", "unit": "kg"},
        ]
        tx, _ = transaction_service.create_transaction(
            purchase(customer.id, items, "300.00", discount="21.25"), staff
        )
        assert [item.subtotal for item in tx.items] == [Decimal("290.00"), Decimal("31.25")]
        assert tx.subtotal == Decimal("321.25")
        assert tx.discount == Decimal("21.25")
        assert tx.total == Decimal("300.00")
        assert [item.position for item in tx.items] == [1, 2]
        assert tx.items[1].unit == "KG"

    def test_snapshots_survive_catalog_edits(self, db_session, customer, cement, staff):
        tx, _ = transaction_service.create_transaction(
            purchase(customer.id, [{"product_id": cement.id, "quantity": 1}], "100"), staff
        )
        product = db_session.get(Product, cement.id)
        product.name = "Cement (new bag)"
        product.unit_price = "130.00"
        db_session.commit()

        item = transaction_service.get_transaction(tx.id).items[0]
        assert item.product_name == "Cement 50kg"
        assert item.unit_price == Decimal("100.00")

    def test_unit_mismatch(self, db_session, customer, cement, staff):
        with pytest.raises(UnitMismatchError) as exc:
            transaction_service.create_transaction(
                purchase(customer.id, [{"product_id": cement.id, "quantity": 1, "unit": "KG"}], "100"), staff
            )
        assert exc.value.details["expected"] == "BAG"

    def test_fractional_bag(self, db_session, customer, cement, staff):
        with pytest.raises(InvalidDecimalError):
            transaction_service.create_transaction(
                purchase(customer.id, [{"product_id": cement.id, "quantity": "1.5"}], "150"), staff
            )

    def test_line_discount_above_line_amount(self, db_session, customer, cement, staff):
        with pytest.raises(InvalidDiscountError):
            transaction_service.create_transaction(
                purchase(customer.id, [{"product_id": cement.id, "quantity": 1, "discount": "100.01"}], "0"), staff
            )

    def test_global_discount_above_subtotal(self, db_session, customer, cement, staff):
        with pytest.raises(InvalidDiscountError):
            transaction_service.create_transaction(
                purchase(customer.id, [{"product_id": cement.id, "quantity": 1}], "0", discount="100.01"), staff
            )

    def test_insufficient_stock_counts_repeated_lines(self, db_session, customer, cement, staff):
        items = [{"product_id": cement.id, "quantity": 30}, {"product_id": cement.id, "quantity": 21}]
        with pytest.raises(InsufficientStockError) as exc:
            transaction_service.create_transaction(purchase(customer.id, items, "5100"), staff)
        assert exc.value.details["available"] == "50"
        assert exc.value.details["requested"] == "51"

    def test_inactive_product(self, db_session, customer, cement, staff):
        db_session.get(Product, cement.id).is_active = False
        db_session.commit()
        with pytest.raises(InvalidTransactionError):
            transaction_service.create_transaction(
                purchase(customer.id, [{"product_id": cement.id, "quantity": 1}], "100"), staff
            )

    def test_unknown_type(self, db_session, customer, staff):
        with pytest.raises(InvalidTransactionError):
            transaction_service.create_transaction({"type": "BARTER", "client_id": customer.id}, staff)

    def test_future_date_rejected(self, db_session, customer, cement, staff):
        with pytest.raises(InvalidTransactionError):
            transaction_service.create_transaction(
                purchase(customer.id, [{"product_id": cement.id, "quantity": 1}], "100", date="2999-01-01T00:00:00Z"),
                staff,
            )


class TestExactLineAmounts:

    def test_line_subtotal_is_the_exact_product(self, db_session, customer, rod, staff):
        items = [{"product_id": rod.id, "quantity": "0.34", "discount": "0.25"}]
        tx, _ = transaction_service.create_transaction(purchase(customer.id, items, "4.00"), staff)

        item = tx.items[0]
        assert item.subtotal == item.quantity * item.unit_price - item.discount
        assert tx.subtotal == Decimal("4.00")

    def test_sub_cent_line_amount_is_rejected(self, db_session, customer, rod, staff):
        # 0.333 KG x 12.50 = 4.1625
        payload = purchase(customer.id, [{"product_id": rod.id, "quantity": "0.333"}], "4.16")

        with pytest.raises(InvalidDecimalError) as exc:
            transaction_service.calculate_transaction(payload)
        assert exc.value.details["value"] == "4.1625"

        with pytest.raises(InvalidDecimalError):
            transaction_service.create_transaction(payload, staff)
        assert db_session.query(Transaction).count() == 0
        assert db_session.get(Product, rod.id).stock == Decimal("100.5")


class TestAdditionalCharges:

    def test_charges_are_added_to_total(self, db_session, customer, cement, staff):
        payload = purchase(
            customer.id, [{"product_id": cement.id, "quantity": 2}], "235.50",
            discount="10.00", transport_fare="30.00", loading="15.50",
        )

        preview = transaction_service.calculate_transaction(payload)
        assert preview.total == Decimal("235.50")
        assert preview.to_dict()["transport_fare"] == "30.00"
        assert preview.to_dict()["loading_and_offloading"] == "0.00"

        tx, balance = transaction_service.create_transaction(payload, staff)
        assert tx.subtotal == Decimal("200.00")
        assert tx.total == Decimal("235.50")
        assert tx.transport_fare == Decimal("30.00")
        assert tx.loading == Decimal("15.50")
        assert balance == Decimal("0.00")

    def test_walk_in_pays_charges_too(self, db_session, cement, staff):
        items = [{"product_id": cement.id, "quantity": 1}]
        with pytest.raises(PaymentMismatchError) as exc:
            transaction_service.create_transaction(
                purchase(items=items, amount_paid="100.00", walk_in={"name": "Guest"}, loading_and_offloading="20"),
                staff,
            )
        assert exc.value.details["required"] == "120.00"

    def test_loading_options_are_exclusive(self, db_session, customer, cement, staff):
        payload = purchase(
            customer.id, [{"product_id": cement.id, "quantity": 1}], "130.00",
            loading="10.00", loading_and_offloading="20.00",
        )
        with pytest.raises(InvalidTransactionError):
            transaction_service.calculate_transaction(payload)
        with pytest.raises(InvalidTransactionError):
            transaction_service.create_transaction(payload, staff)

    @pytest.mark.parametrize("charge", ["transport_fare", "loading", "loading_and_offloading"])
    def test_deposit_takes_no_charges(self, db_session, customer, staff, charge):
        with pytest.raises(InvalidTransactionError) as exc:
            transaction_service.create_transaction(
                {"type": "DEPOSIT", "client_id": customer.id, "amount_paid": "100.00", charge: "5.00"}, staff
            )
        assert exc.value.details["fields"] == [charge]
        assert db_session.get(Client, customer.id).balance == Decimal("0.00")

    def test_discount_cannot_eat_into_charges(self, db_session, customer, cement, staff):
        with pytest.raises(InvalidDiscountError):
            transaction_service.create_transaction(
                purchase(customer.id, [{"product_id": cement.id, "quantity": 1}], "0",
                         discount="110.00", transport_fare="10.00"),
                staff,
            )

    def test_charges_in_sales_report(self, db_session, customer, cement, staff):
        transaction_service.create_transaction(
            purchase(customer.id, [{"product_id": cement.id, "quantity": 1}], "125.00", transport_fare="25.00"),
            staff,
        )
        report = transaction_service.generate_sales_report(
            parse_iso_datetime("2026-10-01T00:00:00Z"), parse_iso_datetime("2026-10-31T23:59:59Z")
        )
        assert report["total_sales"] == "125.00"
        assert report["total_charges"] == "25.00"
        assert report["products"][0]["revenue"] == "100.00"


# =============================================================================
# ATOMICITY
# =============================================================================


class TestAtomicity:

    def test_failure_mid_unit_leaves_no_trace(self, db_session, funded_customer, cement, rod, staff, monkeypatch):
        real_decrement = transaction_service.decrement_stock
        calls = []

        def failing_decrement(session, product_id, quantity):
            calls.append(product_id)
            if len(calls) == 2:
                raise RuntimeError("storage failure")
            return real_decrement(session, product_id, quantity)

        monkeypatch.setattr(transaction_service, "decrement_stock", failing_decrement)

        items = [{"product_id": cement.id, "quantity": 1}, {"product_id": rod.id, "quantity": 2}]
        with pytest.raises(RuntimeError):
            transaction_service.create_transaction(purchase(funded_customer.id, items, "75.00"), staff)

        assert calls == [cement.id, rod.id]
        assert db_session.query(Transaction).count() == 0
        assert db_session.get(Product, cement.id).stock == Decimal("50")
        assert db_session.get(Product, rod.id).stock == Decimal("100.5")
        assert db_session.get(Client, funded_customer.id).balance == Decimal("50.00")
        assert db_session.query(ClientLedgerEntry).filter_by(type="PURCHASE").count() == 0
        assert db_session.query(InvoiceCounter).count() == 0
        assert db_session.query(AuditLogEntry).filter_by(action="TRANSACTION_CREATED").count() == 0

    def test_rejection_does_not_consume_invoice_number(self, db_session, customer, cement, staff):
        with pytest.raises(PaymentMismatchError):
            transaction_service.create_transaction(purchase(customer.id, [{"product_id": cement.id, "quantity": 1}], "1"), staff)
        tx, _ = transaction_service.create_transaction(
            purchase(customer.id, [{"product_id": cement.id, "quantity": 1}], "100"), staff
        )
        assert tx.invoice_number == "INV26100001"

    def test_successful_create_is_audited(self, db_session, customer, cement, staff):
        tx, _ = transaction_service.create_transaction(
            purchase(customer.id, [{"product_id": cement.id, "quantity": 1}], "100"), staff
        )
        audit = db_session.query(AuditLogEntry).filter_by(action="TRANSACTION_CREATED").one()
        assert audit.entity_id == tx.id
        assert audit.to_dict()["payload"]["invoice_number"] == tx.invoice_number


# =============================================================================
# DRY RUN
# =============================================================================


class TestCalculate:

    def test_preview_matches_created_transaction(self, db_session, funded_customer, cement, rod, staff):
        items = [
            {"product_id": cement.id, "quantity": 1, "discount": "5.00"},
            {"product_id": rod.id, "quantity": "1.2"},
        ]
        payload = purchase(funded_customer.id, items, discount="0.50")

        preview = transaction_service.calculate_transaction(payload)
        assert preview.subtotal == Decimal("110.00")
        assert preview.total == Decimal("109.50")
        assert preview.required_payment == Decimal("59.50")
        assert preview.can_use_credit_balance is True
        assert db_session.query(Transaction).count() == 0
        assert db_session.get(Product, cement.id).stock == Decimal("50")

        payload["amount_paid"] = str(preview.required_payment)
        tx, _ = transaction_service.create_transaction(payload, staff)
        assert tx.subtotal == preview.subtotal
        assert tx.total == preview.total
        assert tx.amount_paid == preview.required_payment

    def test_preview_for_walk_in_and_pickup(self, db_session, customer, cement, staff):
        walk_in = transaction_service.calculate_transaction(
            purchase(items=[{"product_id": cement.id, "quantity": 2}], walk_in={"name": "Guest"})
        )
        assert walk_in.required_payment == Decimal("200.00")
        assert walk_in.client_balance is None

        pickup = transaction_service.calculate_transaction(
            purchase(customer.id, [{"product_id": cement.id, "quantity": 2}], tx_type="PICKUP")
        )
        assert pickup.required_payment == Decimal("0")
        assert pickup.to_dict()["required_payment"] == "0.00"

    def test_preview_reports_validation_errors(self, db_session, customer, cement):
        with pytest.raises(InsufficientStockError):
            transaction_service.calculate_transaction(
                purchase(customer.id, [{"product_id": cement.id, "quantity": 51}])
            )


# =============================================================================
# QUERIES
# =============================================================================


class TestQueries:

    def test_list_and_report(self, db_session, customer, cement, rod, staff):
        transaction_service.create_transaction(
            purchase(customer.id, [{"product_id": cement.id, "quantity": 2}], "200"), staff
        )
        transaction_service.create_transaction(purchase(customer.id, rod_items(rod, "2.4"), tx_type="PICKUP"), staff)
        transaction_service.create_transaction(
            {"type": "DEPOSIT", "client_id": customer.id, "amount_paid": "30", "date": DATE}, staff
        )

        rows, pagination = transaction_service.list_transactions({"client_id": customer.id})
        assert pagination["total"] == 3
        rows, _ = transaction_service.list_transactions({"type": "pickup"})
        assert [r.type for r in rows] == ["PICKUP"]
        with pytest.raises(InvalidTransactionError):
            transaction_service.list_transactions({"status": "LOST"})

        report = transaction_service.generate_sales_report(
            parse_iso_datetime("2026-10-01T00:00:00Z"), parse_iso_datetime("2026-10-31T23:59:59Z")
        )
        assert report["transaction_count"] == 3
        assert report["total_sales"] == "230.00"
        assert report["total_deposits"] == "30.00"
        assert report["total_received"] == "230.00"
        assert {p["product_name"]: p["quantity"] for p in report["products"]} == {
            "Cement 50kg": "2",
            "Iron Rod 12mm": "2.4",
        }

    def test_waybill_numbers(self, db_session, customer, cement, staff):
        first, _ = transaction_service.create_transaction(
            purchase(customer.id, [{"product_id": cement.id, "quantity": 1}], "100"), staff
        )
        second, _ = transaction_service.create_transaction(
            purchase(customer.id, [{"product_id": cement.id, "quantity": 1}], "100"), staff
        )
        first = transaction_service.assign_waybill_number(first.id, None, staff)
        second = transaction_service.assign_waybill_number(second.id, None, staff)

        assert first.waybill_number.startswith("WB")
        assert first.waybill_number.endswith("-0001")
        assert second.waybill_number.endswith("-0002")

        manual = transaction_service.assign_waybill_number(first.id, "WB-MANUAL-9", staff)
        assert manual.waybill_number == "WB-MANUAL-9"
