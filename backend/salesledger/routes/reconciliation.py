# Overview: Flask API routes for stock reconciliation reports and admin corrections.

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..decorators import require_actor, require_role
from ..errors import LedgerError
from ..identity import ROLE_ADMIN, ROLE_SUPER_ADMIN
from ..services import reconciliation_service
from ..validation import coerce_int


reconciliation_bp = Blueprint("reconciliation", __name__, url_prefix="/api/reconciliation")


@reconciliation_bp.get("")
@require_actor
def reconciliation_report_route():
    try:
        branch_id = coerce_int(request.args.get("branch_id"), "branch_id", required=False)
        report = reconciliation_service.reconcile(branch_id)
        return jsonify(report.to_dict()), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to run stock reconciliation")
        return jsonify({"error": "Internal server error"}), 500


@reconciliation_bp.post("/auto-correct")
@require_actor
@require_role(ROLE_ADMIN, ROLE_SUPER_ADMIN)
def auto_correct_route():
    """
    Correct the given discrepancies.

    Body: {"reason": "...", "discrepancies": [...]} where each discrepancy is
    the dict returned by GET /api/reconciliation. Without "discrepancies" a
    fresh report for ?branch_id= is corrected.
    """
    try:
        data = request.get_json(silent=True) or {}
        discrepancies = data.get("discrepancies")
        if discrepancies is None:
            branch_id = coerce_int(data.get("branch_id"), "branch_id", required=False)
            discrepancies = reconciliation_service.reconcile(branch_id).discrepancies

        result = reconciliation_service.auto_correct(discrepancies, data.get("reason"), actor=g.actor)
        return jsonify(result.to_dict()), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to auto-correct stock")
        return jsonify({"error": "Internal server error"}), 500
