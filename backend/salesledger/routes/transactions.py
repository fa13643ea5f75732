# Overview: Flask API routes for sales transactions; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..decorators import require_actor
from ..errors import LedgerError
from ..services import transaction_service
from ..validation import coerce_bool, coerce_datetime, coerce_int
from ..time_utils import utcnow
from .. import decimal_utils as D


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")


@transactions_bp.post("")
@require_actor
def create_transaction_route():
    """
    Create a DEPOSIT, PURCHASE, PICKUP, RETURN or WHOLESALE transaction.

    Money and quantities are accepted as strings or numbers and returned as
    fixed-point strings.
    """
    try:
        data = request.get_json(silent=True) or {}
        tx, client_balance = transaction_service.create_transaction(data, g.actor)
        return jsonify({
            "transaction": tx.to_dict(),
            "client_balance": D.to_display(client_balance) if client_balance is not None else None,
        }), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/calculate")
@require_actor
def calculate_transaction_route():
    """Price a transaction without writing anything."""
    try:
        data = request.get_json(silent=True) or {}
        preview = transaction_service.calculate_transaction(data)
        return jsonify(preview.to_dict()), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to calculate transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("")
@require_actor
def list_transactions_route():
    try:
        args = request.args
        filters = {
            "client_id": coerce_int(args.get("client_id"), "client_id", required=False),
            "branch_id": coerce_int(args.get("branch_id"), "branch_id", required=False),
            "type": args.get("type"),
            "status": args.get("status"),
            "invoice_prefix": args.get("invoice_prefix"),
            "is_picked_up": coerce_bool(args["is_picked_up"], "is_picked_up") if "is_picked_up" in args else None,
            "start": coerce_datetime(args.get("start"), "start"),
            "end": coerce_datetime(args.get("end"), "end"),
        }
        page = coerce_int(args.get("page"), "page", required=False) or 1
        per_page = coerce_int(args.get("per_page"), "per_page", required=False) or 50

        rows, pagination = transaction_service.list_transactions(filters, page, per_page)
        return jsonify({
            "transactions": [tx.to_dict(include_items=False) for tx in rows],
            "pagination": pagination,
        }), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list transactions")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("/report")
@require_actor
def sales_report_route():
    """Sales report for ?start=&end= (defaults to the current month)."""
    try:
        now = utcnow()
        start = coerce_datetime(request.args.get("start"), "start") or now.replace(
            day=1, hour=0, minute=0, second=0, microsecond=0
        )
        end = coerce_datetime(request.args.get("end"), "end") or now
        branch_id = coerce_int(request.args.get("branch_id"), "branch_id", required=False)

        report = transaction_service.generate_sales_report(start, end, branch_id)
        return jsonify(report), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to generate sales report")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("/<int:transaction_id>")
@require_actor
def get_transaction_route(transaction_id: int):
    try:
        tx = transaction_service.get_transaction(transaction_id)
        return jsonify({"transaction": tx.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@transactions_bp.patch("/<int:transaction_id>")
@require_actor
def update_transaction_route(transaction_id: int):
    """
    Partial update.

    Accepts amount_paid (top-up), is_picked_up/pickup_date, notes,
    payment_method and status=CANCELLED. Any other field is rejected.
    """
    try:
        data = request.get_json(silent=True) or {}
        tx = transaction_service.update_transaction(transaction_id, data, g.actor)
        return jsonify({"transaction": tx.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/waybill")
@require_actor
def assign_waybill_route(transaction_id: int):
    """Assign the given waybill_number, or the next generated one."""
    try:
        data = request.get_json(silent=True) or {}
        tx = transaction_service.assign_waybill_number(transaction_id, data.get("waybill_number"), g.actor)
        return jsonify({"transaction": tx.to_dict(include_items=False)}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to assign waybill number")
        return jsonify({"error": "Internal server error"}), 500
