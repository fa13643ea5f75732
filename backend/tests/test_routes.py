"""
HTTP API tests.

Verifies:
- Requests without a gateway identity return 401
- Business rejections map to their error code and HTTP status with figures
- Admin-only endpoints return 403 for staff
- Money leaves the API as fixed-point strings
"""

import pytest

from salesledger.identity import Actor, ROLE_STAFF

from conftest import actor_headers


DATE = "2026-10-05T10:00:00Z"


# =============================================================================
# UNAUTHENTICATED ACCESS (401)
# =============================================================================


class TestUnauthenticatedAccess:

    @pytest.mark.parametrize(
        "method,path",
        [
            ("POST", "/api/transactions"),
            ("POST", "/api/transactions/calculate"),
            ("GET", "/api/transactions"),
            ("GET", "/api/transactions/report"),
            ("PATCH", "/api/transactions/1"),
            ("GET", "/api/clients/1/ledger"),
            ("POST", "/api/clients/1/deposits"),
            ("GET", "/api/products/low-stock"),
            ("GET", "/api/reconciliation"),
            ("POST", "/api/reconciliation/auto-correct"),
        ],
    )
    def test_requires_actor(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"
        assert resp.json["code"] == "UNAUTHENTICATED"

    def test_malformed_actor_id(self, client, db_session):
        resp = client.get("/api/transactions", headers={"X-Actor-Id": "abc"})
        assert resp.status_code == 401


class TestHealth:

    def test_health(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json["status"] == "healthy"
        assert resp.json["checks"]["database"]["details"]["transactions"] == 0


# =============================================================================
# TRANSACTIONS
# =============================================================================


class TestTransactionRoutes:

    def test_create_purchase(self, client, db_session, funded_customer, rod, staff):
        resp = client.post("/api/transactions", headers=actor_headers(staff), json={
            "type": "PURCHASE",
            "client_id": funded_customer.id,
            "items": [{"product_id": rod.id, "quantity": "9.6", "unit": "KG"}],
            "amount_paid": 70,
            "date": DATE,
        })
        assert resp.status_code == 201
        body = resp.json
        assert body["client_balance"] == "0.00"
        tx = body["transaction"]
        assert tx["invoice_number"] == "INV26100001"
        assert tx["total"] == "120.00"
        assert tx["amount_paid"] == "70.00"
        assert tx["credit_applied"] == "50.00"
        assert tx["items"][0]["quantity"] == "9.6"
        assert tx["actor_id"] == staff.id
        assert tx["date"] == "2026-10-05T10:00:00Z"

    def test_payment_mismatch_reports_required_amount(self, client, db_session, funded_customer, rod, staff):
        resp = client.post("/api/transactions", headers=actor_headers(staff), json={
            "type": "PURCHASE",
            "client_id": funded_customer.id,
            "items": [{"product_id": rod.id, "quantity": "9.6"}],
            "amount_paid": "71",
        })
        assert resp.status_code == 400
        assert resp.json["code"] == "PAYMENT_MISMATCH"
        assert resp.json["details"] == {"required": "70.00", "provided": "71.00"}

    def test_insufficient_stock_is_a_conflict(self, client, db_session, customer, cement, staff):
        resp = client.post("/api/transactions", headers=actor_headers(staff), json={
            "type": "PICKUP",
            "client_id": customer.id,
            "items": [{"product_id": cement.id, "quantity": 60}],
        })
        assert resp.status_code == 409
        assert resp.json["code"] == "INSUFFICIENT_STOCK"
        assert resp.json["details"]["available"] == "50"

    def test_suspended_client_is_forbidden(self, client, db_session, suspended_customer, staff):
        resp = client.post("/api/transactions", headers=actor_headers(staff), json={
            "type": "DEPOSIT",
            "client_id": suspended_customer.id,
            "amount_paid": "10",
        })
        assert resp.status_code == 403
        assert resp.json["code"] == "SUSPENDED_CLIENT"

    def test_calculate(self, client, db_session, funded_customer, cement, staff):
        resp = client.post("/api/transactions/calculate", headers=actor_headers(staff), json={
            "type": "PURCHASE",
            "client_id": funded_customer.id,
            "items": [{"product_id": cement.id, "quantity": 1}],
        })
        assert resp.status_code == 200
        assert resp.json["total"] == "100.00"
        assert resp.json["required_payment"] == "50.00"
        assert resp.json["can_use_credit_balance"] is True

    def test_get_update_and_list(self, client, db_session, customer, rod, staff):
        headers = actor_headers(staff)
        created = client.post("/api/transactions", headers=headers, json={
            "type": "PICKUP",
            "client_id": customer.id,
            "items": [{"product_id": rod.id, "quantity": "2.4"}],
            "date": DATE,
        }).json["transaction"]

        resp = client.get(f"/api/transactions/{created['id']}", headers=headers)
        assert resp.status_code == 200
        assert resp.json["transaction"]["invoice_number"] == created["invoice_number"]

        resp = client.patch(f"/api/transactions/{created['id']}", headers=headers, json={"amount_paid": "12.5"})
        assert resp.status_code == 200
        assert resp.json["transaction"]["amount_paid"] == "12.50"

        resp = client.patch(f"/api/transactions/{created['id']}", headers=headers, json={"total": "1"})
        assert resp.status_code == 400
        assert resp.json["details"]["fields"] == ["total"]

        resp = client.get("/api/transactions?type=PICKUP&per_page=10", headers=headers)
        assert resp.status_code == 200
        assert resp.json["pagination"]["total"] == 1
        assert "items" not in resp.json["transactions"][0]

        resp = client.get("/api/transactions?client_id=1.5", headers=headers)
        assert resp.status_code == 400

    def test_missing_transaction(self, client, db_session, staff):
        resp = client.get("/api/transactions/999", headers=actor_headers(staff))
        assert resp.status_code == 404
        assert resp.json["code"] == "NOT_FOUND"

    def test_waybill_and_report(self, client, db_session, customer, cement, staff):
        headers = actor_headers(staff)
        tx_id = client.post("/api/transactions", headers=headers, json={
            "type": "PURCHASE",
            "client_id": customer.id,
            "items": [{"product_id": cement.id, "quantity": 1}],
            "amount_paid": "100",
            "date": DATE,
        }).json["transaction"]["id"]

        resp = client.post(f"/api/transactions/{tx_id}/waybill", headers=headers, json={})
        assert resp.status_code == 200
        assert resp.json["transaction"]["waybill_number"].endswith("-0001")

        resp = client.get(
            "/api/transactions/report?start=2026-10-01T00:00:00Z&end=2026-10-31T23:59:59Z", headers=headers
        )
        assert resp.status_code == 200
        assert resp.json["total_sales"] == "100.00"


# =============================================================================
# CLIENTS, PRODUCTS, RECONCILIATION
# =============================================================================


class TestClientRoutes:

    def test_deposit_and_ledger(self, client, db_session, customer, staff):
        headers = actor_headers(staff)
        resp = client.post(f"/api/clients/{customer.id}/deposits", headers=headers, json={"amount": "80.00"})
        assert resp.status_code == 201
        assert resp.json["client_balance"] == "80.00"

        resp = client.get(f"/api/clients/{customer.id}/ledger", headers=headers)
        assert resp.status_code == 200
        assert resp.json["totals"]["deposits"] == "80.00"
        assert resp.json["entries"][0]["type"] == "DEPOSIT"

        resp = client.get(f"/api/clients/{customer.id}/lifetime-value", headers=headers)
        assert resp.json["lifetime_value"] == "80.00"

    def test_debtors(self, client, db_session, customer, rod, staff):
        headers = actor_headers(staff)
        client.post("/api/transactions", headers=headers, json={
            "type": "PICKUP",
            "client_id": customer.id,
            "items": [{"product_id": rod.id, "quantity": "2.4"}],
        })
        resp = client.get("/api/clients/debtors", headers=headers)
        assert [c["balance"] for c in resp.json["clients"]] == ["-30.00"]

    def test_recompute_is_admin_only(self, client, db_session, customer, staff, admin):
        resp = client.post(f"/api/clients/{customer.id}/recompute-balance", headers=actor_headers(staff))
        assert resp.status_code == 403
        assert resp.json["code"] == "FORBIDDEN"

        resp = client.post(f"/api/clients/{customer.id}/recompute-balance?fix=true", headers=actor_headers(admin))
        assert resp.status_code == 200
        assert resp.json["drift"] == "0.00"


class TestProductRoutes:

    def test_restock(self, client, db_session, cement, staff):
        resp = client.post(f"/api/products/{cement.id}/restock", headers=actor_headers(staff), json={"quantity": 5})
        assert resp.status_code == 200
        assert resp.json["product"]["stock"] == "55"

        resp = client.post(f"/api/products/{cement.id}/restock", headers=actor_headers(staff), json={"quantity": "0.5"})
        assert resp.status_code == 400
        assert resp.json["code"] == "INVALID_DECIMAL"

    def test_stock_reports(self, client, db_session, cement, staff):
        headers = actor_headers(staff)
        resp = client.get("/api/products/low-stock", headers=headers)
        assert resp.json == {"low_stock": [], "zero_stock": []}

        resp = client.get("/api/products/inventory-report", headers=headers)
        assert resp.json["total_value"] == "5000.00"


class TestReconciliationRoutes:

    def test_report(self, client, db_session, cement, staff):
        resp = client.get("/api/reconciliation", headers=actor_headers(staff))
        assert resp.status_code == 200
        assert resp.json["discrepancies_found"] == 0

    def test_auto_correct_requires_admin(self, client, db_session, cement, admin):
        staff = Actor(id=9, role=ROLE_STAFF)
        resp = client.post("/api/reconciliation/auto-correct", headers=actor_headers(staff), json={})
        assert resp.status_code == 403

        resp = client.post("/api/reconciliation/auto-correct", headers=actor_headers(admin), json={"reason": "count"})
        assert resp.status_code == 200
        assert resp.json == {"reason": "count", "corrected": [], "skipped": [], "failed": []}
