"""
Approval Blueprint: sequential chains and parallel consensus groups.

Routes:
  GET    /approvals/chain-preview?document_type=&amount=   – levels a submission would get
  POST   /approvals/submit                                 – open a chain for a document
  POST   /approvals/<doc_type>/<doc_id>/decide             – approve / reject the current level
  GET    /approvals/<doc_type>/<doc_id>/steps              – step history of a document
  GET    /approvals/pending                                – what the current user can act on

  POST   /parallel-approvals                               – open a consensus group
  POST   /parallel-approvals/<gid>/respond                 – one approver's decision
  GET    /parallel-approvals/<doc_type>/<doc_id>           – groups of a document
  GET    /parallel-approvals/pending                       – groups waiting on the current user

The acting user comes from the X-User header (or ``user_id`` in the body).
"""

import logging

from flask import Blueprint, jsonify, request

from wms_workflow.blueprints import current_user, register_error_handlers
from wms_workflow.core.exceptions import ValidationError
from wms_workflow.services.engine_context import get_engine

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1")
register_error_handlers(approval_bp)


def _acting_user(data: dict | None = None) -> str:
    user_id = current_user() or (data or {}).get("user_id") or request.args.get("user_id")
    if not user_id:
        raise ValidationError("Acting user is required", details={"X-User": "header is required"})
    return str(user_id)


def _amount(raw):
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValidationError("Invalid amount", details={"amount": "amount must be numeric"})


# ═════════════════════════════════════════════════════════════════════════════
# SEQUENTIAL APPROVALS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approvals/chain-preview", methods=["GET"])
def chain_preview():
    document_type = request.args.get("document_type", "")
    if not document_type:
        raise ValidationError("document_type is required", details={"document_type": "required"})
    amount = _amount(request.args.get("amount"))
    levels = get_engine().approvals.get_approval_chain(document_type, amount)
    return jsonify({"document_type": document_type, "amount": amount, "levels": levels})


@approval_bp.route("/approvals/submit", methods=["POST"])
def submit_for_approval():
    """Submit a document for approval.

    Body: { document_type, document_id, amount }
    """
    data = request.get_json(silent=True) or {}
    errors = {}
    if not data.get("document_type"):
        errors["document_type"] = "document_type is required"
    if not data.get("document_id"):
        errors["document_id"] = "document_id is required"
    if "amount" not in data:
        errors["amount"] = "amount is required"
    if errors:
        raise ValidationError("Invalid submission", details=errors)

    result = get_engine().approvals.submit_for_approval(
        data["document_type"], data["document_id"], _amount(data["amount"]),
        current_user() or data.get("submitted_by_id"),
    )
    return jsonify(result), 201


@approval_bp.route("/approvals/<doc_type>/<doc_id>/decide", methods=["POST"])
def decide(doc_type, doc_id):
    """Approve or reject the current level.

    Body: { action: "approve"|"reject", comments? }
    """
    data = request.get_json(silent=True) or {}
    action = (data.get("action") or data.get("decision") or "").strip()
    result = get_engine().approvals.process_approval(
        doc_type, doc_id, action, _acting_user(data), data.get("comments"),
    )
    return jsonify(result)


@approval_bp.route("/approvals/<doc_type>/<doc_id>/steps", methods=["GET"])
def approval_steps(doc_type, doc_id):
    steps = get_engine().approvals.get_approval_steps(doc_type, doc_id)
    return jsonify([s.to_dict() for s in steps])


@approval_bp.route("/approvals/pending", methods=["GET"])
def pending_approvals():
    return jsonify(get_engine().approvals.get_pending_approvals_for_user(_acting_user()))


# ═════════════════════════════════════════════════════════════════════════════
# PARALLEL APPROVALS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/parallel-approvals", methods=["POST"])
def create_parallel_group():
    """Open a consensus group.

    Body: { document_type, document_id, level?, mode: "all"|"any", approver_ids: [...], sla_hours? }
    """
    data = request.get_json(silent=True) or {}
    errors = {}
    if not data.get("document_type"):
        errors["document_type"] = "document_type is required"
    if not data.get("document_id"):
        errors["document_id"] = "document_id is required"
    if errors:
        raise ValidationError("Invalid parallel approval", details=errors)

    group = get_engine().parallel_approvals.create_group(
        data["document_type"],
        data["document_id"],
        data.get("level", 1),
        data.get("mode", "all"),
        data.get("approver_ids") or [],
        created_by_id=current_user() or data.get("created_by_id"),
        sla_hours=data.get("sla_hours"),
    )
    return jsonify(group.to_dict()), 201


@approval_bp.route("/parallel-approvals/<int:gid>/respond", methods=["POST"])
def respond(gid):
    """Body: { decision: "approved"|"rejected", comments? }"""
    data = request.get_json(silent=True) or {}
    group = get_engine().parallel_approvals.respond(
        gid, _acting_user(data), (data.get("decision") or "").strip(), data.get("comments"),
    )
    return jsonify(group.to_dict())


@approval_bp.route("/parallel-approvals/pending", methods=["GET"])
def pending_parallel():
    groups = get_engine().parallel_approvals.get_pending_for_approver(_acting_user())
    return jsonify([g.to_dict() for g in groups])


@approval_bp.route("/parallel-approvals/<doc_type>/<doc_id>", methods=["GET"])
def parallel_status(doc_type, doc_id):
    groups = get_engine().parallel_approvals.get_group_status(doc_type, doc_id)
    return jsonify([g.to_dict() for g in groups])
