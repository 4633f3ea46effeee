"""
Operation Plan Blueprint.

Routes:
  GET    /operation-plans                             – list plans (?status=&created_by=)
  POST   /operation-plans                             – create draft plan (+5 approval slots)
  GET    /operation-plans/<pid>                       – plan with steps and approvals
  PUT    /operation-plans/<pid>                       – update draft plan
  DELETE /operation-plans/<pid>                       – delete draft plan
  POST   /operation-plans/<pid>/steps                 – add step
  PUT    /operation-plans/<pid>/steps/<sid>           – update step
  DELETE /operation-plans/<pid>/steps/<sid>           – delete step
  PUT    /operation-plans/<pid>/approvers             – assign approver per role
  POST   /operation-plans/<pid>/submit                – draft → pending_approval
  POST   /operation-plans/<pid>/approve               – approve own role
  POST   /operation-plans/<pid>/reject                – reject own role
  GET    /operation-plans/<pid>/approvals             – approval status
  GET    /approvals/pending                           – my pending approvals

The acting user comes from the X-User-Id header.  Business-rule failures
are raised by the services and rendered by the app-wide error handlers.
"""

from flask import Blueprint, jsonify, request

from shopfloor.blueprints import current_user_id, json_body
from shopfloor.services import approval_service, operation_plan_service

operation_plan_bp = Blueprint("operation_plan_bp", __name__, url_prefix="/api/v1")


# ═════════════════════════════════════════════════════════════════════════════
# PLAN CRUD
# ═════════════════════════════════════════════════════════════════════════════

@operation_plan_bp.route("/operation-plans", methods=["GET"])
def list_plans():
    created_by = request.args.get("created_by", type=int)
    plans = operation_plan_service.list_plans(
        status=request.args.get("status") or None,
        created_by=created_by,
    )
    return jsonify({"items": [p.to_dict() for p in plans], "total": len(plans)})


@operation_plan_bp.route("/operation-plans", methods=["POST"])
def create_plan():
    actor_id = current_user_id()
    plan = operation_plan_service.create_plan(json_body(), actor_id)
    return jsonify(plan.to_dict(include_children=True)), 201


@operation_plan_bp.route("/operation-plans/<int:plan_id>", methods=["GET"])
def get_plan(plan_id):
    plan = operation_plan_service.get_plan(plan_id)
    return jsonify(plan.to_dict(include_children=True))


@operation_plan_bp.route("/operation-plans/<int:plan_id>", methods=["PUT"])
def update_plan(plan_id):
    plan = operation_plan_service.update_plan(plan_id, json_body(), current_user_id())
    return jsonify(plan.to_dict(include_children=True))


@operation_plan_bp.route("/operation-plans/<int:plan_id>", methods=["DELETE"])
def delete_plan(plan_id):
    operation_plan_service.delete_plan(plan_id, current_user_id())
    return jsonify({"deleted": True})


# ═════════════════════════════════════════════════════════════════════════════
# STEPS
# ═════════════════════════════════════════════════════════════════════════════

@operation_plan_bp.route("/operation-plans/<int:plan_id>/steps", methods=["POST"])
def add_step(plan_id):
    step = operation_plan_service.add_step(plan_id, json_body(), current_user_id())
    return jsonify(step.to_dict()), 201


@operation_plan_bp.route("/operation-plans/<int:plan_id>/steps/<int:step_id>", methods=["PUT"])
def update_step(plan_id, step_id):
    step = operation_plan_service.update_step(plan_id, step_id, json_body(), current_user_id())
    return jsonify(step.to_dict())


@operation_plan_bp.route("/operation-plans/<int:plan_id>/steps/<int:step_id>", methods=["DELETE"])
def delete_step(plan_id, step_id):
    operation_plan_service.delete_step(plan_id, step_id, current_user_id())
    return jsonify({"deleted": True})


# ═════════════════════════════════════════════════════════════════════════════
# APPROVAL WORKFLOW
# ═════════════════════════════════════════════════════════════════════════════

@operation_plan_bp.route("/operation-plans/<int:plan_id>/approvers", methods=["PUT"])
def assign_approvers(plan_id):
    """Body: {"approvers": {"PEM": 3, "Toolpather": 4, "QC": 5, "Custom1": 6, "Custom2": 7}}"""
    data = json_body()
    approvals = operation_plan_service.assign_approvers(
        plan_id, data.get("approvers", data), current_user_id(),
    )
    return jsonify({"items": [a.to_dict() for a in approvals]})


@operation_plan_bp.route("/operation-plans/<int:plan_id>/submit", methods=["POST"])
def submit_plan(plan_id):
    plan = approval_service.submit_for_approval(plan_id, current_user_id())
    return jsonify(plan.to_dict(include_children=True))


def _decide(plan_id, decide):
    data = json_body()
    decision = decide(
        plan_id,
        current_user_id(),
        data.get("approver_role") or data.get("role"),
        comments=data.get("comments", ""),
    )
    return jsonify({
        "plan": decision.plan.to_dict(),
        "approval": decision.approval.to_dict(),
        "plan_transitioned": decision.plan_transitioned,
    })


@operation_plan_bp.route("/operation-plans/<int:plan_id>/approve", methods=["POST"])
def approve_plan(plan_id):
    """Body: {"approver_role": "QC", "comments": "..."}"""
    return _decide(plan_id, approval_service.approve_plan)


@operation_plan_bp.route("/operation-plans/<int:plan_id>/reject", methods=["POST"])
def reject_plan(plan_id):
    """Body: {"approver_role": "QC", "comments": "..."}"""
    return _decide(plan_id, approval_service.reject_plan)


@operation_plan_bp.route("/operation-plans/<int:plan_id>/approvals", methods=["GET"])
def approval_status(plan_id):
    approvals = approval_service.get_approval_status(plan_id)
    plan = operation_plan_service.get_plan(plan_id)
    return jsonify({
        "plan_id": plan_id,
        "status": plan.status,
        "approvals": [a.to_dict() for a in approvals],
        "summary": approval_service.summarize(approvals),
    })


@operation_plan_bp.route("/approvals/pending", methods=["GET"])
def pending_approvals():
    records = approval_service.get_pending_approvals_for_approver(current_user_id())
    return jsonify({
        "items": [{"approval": r.to_dict(), "plan": r.plan.to_dict()} for r in records],
        "total": len(records),
    })
