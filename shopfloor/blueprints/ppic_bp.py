"""
PPIC Scheduling Blueprint.

Routes:
  GET    /ppic/machines                                   – machine master
  POST   /ppic/machines                                   – create machine
  GET    /ppic/schedules                                  – list (?status=&priority=&machine_id=)
  POST   /ppic/schedules                                  – create with 1..5 machine assignments
  GET    /ppic/schedules/<sid>                            – schedule detail (+ links)
  PUT    /ppic/schedules/<sid>                            – update; cascades successors
  DELETE /ppic/schedules/<sid>                            – delete (links removed too)
  POST   /ppic/schedules/<sid>/assignments                – add machine assignment
  PUT    /ppic/schedules/<sid>/assignments/<aid>          – update assignment
  DELETE /ppic/schedules/<sid>/assignments/<aid>          – remove assignment
  GET    /ppic/links                                      – list (?source_id= | ?target_id=)
  POST   /ppic/links                                      – create link (may reschedule target)
  DELETE /ppic/links/<lid>                                – delete link
  GET    /ppic/gantt                                      – Gantt projection
"""

from flask import Blueprint, jsonify, request

from shopfloor.blueprints import current_user_id, json_body
from shopfloor.services import gantt_service, link_service, ppic_schedule_service

ppic_bp = Blueprint("ppic_bp", __name__, url_prefix="/api/v1/ppic")


# ═════════════════════════════════════════════════════════════════════════════
# MACHINES
# ═════════════════════════════════════════════════════════════════════════════

@ppic_bp.route("/machines", methods=["GET"])
def list_machines():
    machines = ppic_schedule_service.list_machines(status=request.args.get("status") or None)
    return jsonify({"items": [m.to_dict() for m in machines], "total": len(machines)})


@ppic_bp.route("/machines", methods=["POST"])
def create_machine():
    machine = ppic_schedule_service.create_machine(json_body())
    return jsonify(machine.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════════
# SCHEDULES
# ═════════════════════════════════════════════════════════════════════════════

@ppic_bp.route("/schedules", methods=["GET"])
def list_schedules():
    schedules = ppic_schedule_service.list_schedules(
        status=request.args.get("status") or None,
        priority=request.args.get("priority") or None,
        machine_id=request.args.get("machine_id", type=int),
    )
    return jsonify({"items": [s.to_dict() for s in schedules], "total": len(schedules)})


@ppic_bp.route("/schedules", methods=["POST"])
def create_schedule():
    schedule = ppic_schedule_service.create_schedule(json_body(), current_user_id(required=False))
    return jsonify(schedule.to_dict()), 201


@ppic_bp.route("/schedules/<int:schedule_id>", methods=["GET"])
def get_schedule(schedule_id):
    schedule = ppic_schedule_service.get_schedule(schedule_id)
    result = schedule.to_dict()
    result["predecessors"] = [lk.to_dict() for lk in link_service.get_links_by_target(schedule_id)]
    result["successors"] = [lk.to_dict() for lk in link_service.get_links_by_source(schedule_id)]
    return jsonify(result)


@ppic_bp.route("/schedules/<int:schedule_id>", methods=["PUT"])
def update_schedule(schedule_id):
    schedule, moved = ppic_schedule_service.update_schedule(schedule_id, json_body())
    result = schedule.to_dict()
    result["rescheduled_ids"] = moved
    return jsonify(result)


@ppic_bp.route("/schedules/<int:schedule_id>", methods=["DELETE"])
def delete_schedule(schedule_id):
    ppic_schedule_service.delete_schedule(schedule_id)
    return jsonify({"deleted": True})


# ── Machine assignments ──────────────────────────────────────────────────────

@ppic_bp.route("/schedules/<int:schedule_id>/assignments", methods=["POST"])
def add_assignment(schedule_id):
    assignment = ppic_schedule_service.add_machine_assignment(schedule_id, json_body())
    return jsonify(assignment.to_dict()), 201


@ppic_bp.route("/schedules/<int:schedule_id>/assignments/<int:assignment_id>", methods=["PUT"])
def update_assignment(schedule_id, assignment_id):
    assignment = ppic_schedule_service.update_assignment(schedule_id, assignment_id, json_body())
    return jsonify(assignment.to_dict())


@ppic_bp.route("/schedules/<int:schedule_id>/assignments/<int:assignment_id>", methods=["DELETE"])
def remove_assignment(schedule_id, assignment_id):
    ppic_schedule_service.remove_machine_assignment(schedule_id, assignment_id)
    return jsonify({"deleted": True})


# ═════════════════════════════════════════════════════════════════════════════
# LINKS
# ═════════════════════════════════════════════════════════════════════════════

@ppic_bp.route("/links", methods=["GET"])
def list_links():
    source_id = request.args.get("source_id", type=int)
    target_id = request.args.get("target_id", type=int)
    if source_id is not None:
        links = link_service.get_links_by_source(source_id)
    elif target_id is not None:
        links = link_service.get_links_by_target(target_id)
    else:
        links = link_service.list_links()
    return jsonify({"items": [lk.to_dict() for lk in links], "total": len(links)})


@ppic_bp.route("/links", methods=["POST"])
def create_link():
    """Body: {"source_id": 1, "target_id": 2, "link_type": "finish_to_start"}"""
    data = json_body()
    link = link_service.create_link(
        data.get("source_id", data.get("source_schedule_id")),
        data.get("target_id", data.get("target_schedule_id")),
        data.get("link_type", data.get("type")),
    )
    target = ppic_schedule_service.get_schedule(link.target_schedule_id)
    result = link.to_dict()
    result["target"] = target.to_dict(include_assignments=False)
    return jsonify(result), 201


@ppic_bp.route("/links/<int:link_id>", methods=["DELETE"])
def delete_link(link_id):
    link_service.delete_link(link_id)
    return jsonify({"deleted": True})


# ═════════════════════════════════════════════════════════════════════════════
# GANTT
# ═════════════════════════════════════════════════════════════════════════════

@ppic_bp.route("/gantt", methods=["GET"])
def gantt():
    """Query: start_date, end_date, machine_id, priority, status, group_by=priority|machine|all"""
    filters = gantt_service.parse_filters(request.args)
    return jsonify(gantt_service.get_gantt_chart(filters))
