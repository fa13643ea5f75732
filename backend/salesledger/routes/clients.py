# Overview: Flask API routes for client balances; ledger history, deposits and debtor lists.

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..decorators import require_actor, require_role
from ..errors import LedgerError
from ..identity import ROLE_ADMIN, ROLE_SUPER_ADMIN
from ..services import client_ledger_service
from ..validation import coerce_bool, coerce_datetime, coerce_int


clients_bp = Blueprint("clients", __name__, url_prefix="/api/clients")


@clients_bp.get("/<int:client_id>/ledger")
@require_actor
def client_ledger_route(client_id: int):
    try:
        args = request.args
        history = client_ledger_service.get_transaction_history(
            client_id,
            start=coerce_datetime(args.get("start"), "start"),
            end=coerce_datetime(args.get("end"), "end"),
            page=coerce_int(args.get("page"), "page", required=False) or 1,
            per_page=coerce_int(args.get("per_page"), "per_page", required=False) or 50,
        )
        return jsonify(history), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load client ledger")
        return jsonify({"error": "Internal server error"}), 500


@clients_bp.post("/<int:client_id>/deposits")
@require_actor
def record_deposit_route(client_id: int):
    try:
        data = request.get_json(silent=True) or {}
        entry = client_ledger_service.record_deposit(
            client_id, data.get("amount"), g.actor, description=data.get("description")
        )
        return jsonify({"entry": entry.to_dict(), "client_balance": entry.to_dict()["balance_after"]}), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record deposit")
        return jsonify({"error": "Internal server error"}), 500


@clients_bp.get("/debtors")
@require_actor
def debtors_route():
    try:
        debtors = client_ledger_service.find_debtors(
            min_amount=request.args.get("min_amount") or 0,
            branch_id=coerce_int(request.args.get("branch_id"), "branch_id", required=False),
        )
        return jsonify({"clients": [c.to_dict() for c in debtors]}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@clients_bp.get("/<int:client_id>/lifetime-value")
@require_actor
def lifetime_value_route(client_id: int):
    try:
        return jsonify(client_ledger_service.get_lifetime_value(client_id)), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@clients_bp.post("/<int:client_id>/recompute-balance")
@require_actor
@require_role(ROLE_ADMIN, ROLE_SUPER_ADMIN)
def recompute_balance_route(client_id: int):
    """Fold the ledger and report drift; ?fix=true repairs the cached balance."""
    try:
        fix = coerce_bool(request.args["fix"], "fix") if "fix" in request.args else False
        return jsonify(client_ledger_service.recompute_balance(client_id, fix=fix)), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to recompute client balance")
        return jsonify({"error": "Internal server error"}), 500
