# Overview: Flask API routes for product stock; manual restock and stock level reports.

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..decorators import require_actor
from ..errors import LedgerError
from ..services import reconciliation_service, stock_service
from ..validation import coerce_int


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.post("/<int:product_id>/restock")
@require_actor
def restock_route(product_id: int):
    try:
        data = request.get_json(silent=True) or {}
        product = stock_service.restock(product_id, data.get("quantity"), g.actor, note=data.get("note"))
        return jsonify({"product": product.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to restock product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/low-stock")
@require_actor
def low_stock_route():
    try:
        branch_id = coerce_int(request.args.get("branch_id"), "branch_id", required=False)
        return jsonify({
            "low_stock": [p.to_dict() for p in reconciliation_service.get_low_stock_products(branch_id)],
            "zero_stock": [p.to_dict() for p in reconciliation_service.get_zero_stock_products(branch_id)],
        }), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@products_bp.get("/inventory-report")
@require_actor
def inventory_report_route():
    try:
        branch_id = coerce_int(request.args.get("branch_id"), "branch_id", required=False)
        return jsonify(reconciliation_service.generate_inventory_report(branch_id)), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
