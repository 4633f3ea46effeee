"""
PPIC schedule service — machines, schedules and machine assignments.

Blueprint → Service (here) → Model/DB.

Business rules enforced here:
    - priority, material_status and status come from closed sets.
    - finish_date >= start_date; dates are ISO ``YYYY-MM-DD``.
    - A schedule has 1..5 machine assignments with unique sequence 1..5.
    - Moving a schedule's start must keep it strictly after the finish of
      every finish-to-start predecessor.
    - Moving a schedule pushes finish-to-start successors that would now
      overlap, transitively, in the same transaction.  A successor reached
      along several paths is re-checked each time it moves.  A cycle in
      those links aborts the update.
    - Successors only ever move later.  Shrinking or pulling a schedule
      earlier leaves its dependents where they are; re-anchoring them to
      the new finish is not done.
    - Deleting a schedule removes every link that references it.
    - No optimistic locking: concurrent edits are last-write-wins.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import delete, or_, select, update

from shopfloor.core.exceptions import ConflictError, NotFoundError, ValidationError
from shopfloor.models import db
from shopfloor.models.operation_plan import OperationPlan
from shopfloor.models.ppic import (
    ASSIGNMENT_STATUSES,
    LINK_FINISH_TO_START,
    MACHINE_STATUSES,
    MATERIAL_STATUSES,
    MAX_ASSIGNMENTS,
    MIN_ASSIGNMENTS,
    PRIORITY_RANK,
    SCHEDULE_EDITABLE_FIELDS,
    SCHEDULE_STATUSES,
    Machine,
    MachineAssignment,
    PPICSchedule,
    ScheduleLink,
)
from shopfloor.services.link_service import get_links_by_source, get_links_by_target, reschedule_target

logger = logging.getLogger(__name__)


# ── Parsing helpers ──────────────────────────────────────────────────────────


def parse_date(val, field: str) -> date:
    """Parse ``YYYY-MM-DD`` (a full ISO datetime is truncated to its date)."""
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val
    if not val or not isinstance(val, str):
        raise ValidationError(f"{field} is required (YYYY-MM-DD)", details={field: "required"})
    try:
        return date.fromisoformat(val.strip()[:10])
    except ValueError:
        raise ValidationError(f"Invalid {field} '{val}', expected YYYY-MM-DD", details={field: "invalid"})


def _parse_dt(val, field: str) -> datetime | None:
    if val in (None, ""):
        return None
    if isinstance(val, datetime):
        return val
    try:
        return datetime.fromisoformat(str(val).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid {field} '{val}', expected ISO 8601", details={field: "invalid"})


def _check_choice(value, allowed, field: str):
    if value not in allowed:
        ordered = list(allowed) if isinstance(allowed, dict) else sorted(allowed)
        raise ValidationError(f"Invalid {field} '{value}'. Must be one of: {ordered}",
                              details={field: "invalid"})
    return value


def _check_progress(value) -> int:
    try:
        progress = int(value)
    except (TypeError, ValueError):
        raise ValidationError("progress must be an integer", details={"progress": "invalid"})
    if not 0 <= progress <= 100:
        raise ValidationError("progress must be between 0 and 100", details={"progress": "out of range"})
    return progress


def _check_dates(start: date, finish: date) -> None:
    if finish < start:
        raise ValidationError("finish_date must be on or after start_date",
                              details={"finish_date": "before start_date"})


def _parse_sequence(value) -> int:
    try:
        seq = int(value)
    except (TypeError, ValueError):
        raise ValidationError("sequence must be an integer", details={"sequence": "invalid"})
    if not 1 <= seq <= MAX_ASSIGNMENTS:
        raise ValidationError(f"sequence must be between 1 and {MAX_ASSIGNMENTS}",
                              details={"sequence": "out of range"})
    return seq


def _build_assignment(data: dict, sequence: int | None = None) -> MachineAssignment:
    """Validate one assignment payload and return an unsaved MachineAssignment."""
    if not isinstance(data, dict):
        raise ValidationError("Each machine assignment must be an object",
                              details={"machine_assignments": "invalid"})
    if data.get("machine_id") in (None, ""):
        raise ValidationError("machine_id is required", details={"machine_id": "required"})
    machine = get_machine(data["machine_id"])

    raw_seq = data.get("sequence")
    seq = _parse_sequence(sequence if raw_seq in (None, "") else raw_seq)
    try:
        target_hours = float(data.get("target_hours") or 0)
    except (TypeError, ValueError):
        raise ValidationError("target_hours must be a number", details={"target_hours": "invalid"})
    if target_hours < 0:
        raise ValidationError("target_hours must be >= 0", details={"target_hours": "negative"})

    status = data.get("status") or "pending"
    _check_choice(status, ASSIGNMENT_STATUSES, "status")

    return MachineAssignment(
        machine_id=machine.id,
        sequence=seq,
        target_hours=target_hours,
        scheduled_start=_parse_dt(data.get("scheduled_start"), "scheduled_start"),
        scheduled_end=_parse_dt(data.get("scheduled_end"), "scheduled_end"),
        status=status,
    )


def _validate_assignment_set(assignments: list[MachineAssignment]) -> None:
    if not MIN_ASSIGNMENTS <= len(assignments) <= MAX_ASSIGNMENTS:
        raise ValidationError(
            f"A schedule needs between {MIN_ASSIGNMENTS} and {MAX_ASSIGNMENTS} machine assignments",
            details={"machine_assignments": f"count {len(assignments)}"},
        )
    seen = set()
    for a in assignments:
        if a.sequence in seen:
            raise ValidationError(f"Duplicate machine sequence {a.sequence}",
                                  details={"sequence": "duplicate"})
        seen.add(a.sequence)


# ── Machine master ───────────────────────────────────────────────────────────


def get_machine(machine_id) -> Machine:
    try:
        machine = db.session.get(Machine, int(machine_id))
    except (TypeError, ValueError):
        raise ValidationError("machine_id must be an integer", details={"machine_id": "invalid"})
    if machine is None:
        raise NotFoundError(resource="Machine", resource_id=machine_id)
    return machine


def list_machines(status: str | None = None) -> list[Machine]:
    stmt = select(Machine).order_by(Machine.machine_code)
    if status:
        stmt = stmt.where(Machine.status == status)
    return db.session.execute(stmt).scalars().all()


def create_machine(data: dict) -> Machine:
    code = (data.get("machine_code") or "").strip()
    name = (data.get("machine_name") or "").strip()
    if not code:
        raise ValidationError("machine_code is required", details={"machine_code": "required"})
    if not name:
        raise ValidationError("machine_name is required", details={"machine_name": "required"})
    status = data.get("status") or "active"
    _check_choice(status, MACHINE_STATUSES, "status")
    if db.session.execute(select(Machine).where(Machine.machine_code == code)).scalar_one_or_none():
        raise ConflictError("Machine", "machine_code", code)

    machine = Machine(machine_code=code, machine_name=name, status=status)
    db.session.add(machine)
    db.session.commit()
    logger.info("Machine created id=%s code=%s", machine.id, code)
    return machine


# ── PPICSchedule CRUD ────────────────────────────────────────────────────────


def get_schedule(schedule_id: int) -> PPICSchedule:
    schedule = db.session.get(PPICSchedule, schedule_id)
    if schedule is None:
        raise NotFoundError(resource="PPICSchedule", resource_id=schedule_id)
    return schedule


def list_schedules(status: str | None = None, priority: str | None = None,
                   machine_id: int | None = None) -> list[PPICSchedule]:
    """Schedules ordered by priority rank, then start date."""
    stmt = select(PPICSchedule)
    if status:
        stmt = stmt.where(PPICSchedule.status == status)
    if priority:
        stmt = stmt.where(PPICSchedule.priority == priority)
    if machine_id is not None:
        stmt = stmt.where(PPICSchedule.assignments.any(MachineAssignment.machine_id == machine_id))
    items = db.session.execute(stmt).scalars().all()
    return sorted(items, key=lambda s: (PRIORITY_RANK.get(s.priority, len(PRIORITY_RANK)), s.start_date, s.id))


def create_schedule(data: dict, actor_id: int | None = None) -> PPICSchedule:
    """Create a schedule with its 1..5 machine assignments.

    Raises:
        ValidationError: missing/invalid field, bad dates, bad assignments.
        ConflictError: njo already used.
        NotFoundError: an assigned machine does not exist.
    """
    njo = (data.get("njo") or "").strip()
    part_name = (data.get("part_name") or "").strip()
    if not njo:
        raise ValidationError("njo is required", details={"njo": "required"})
    if not part_name:
        raise ValidationError("part_name is required", details={"part_name": "required"})

    priority = _check_choice(data.get("priority") or "Medium", PRIORITY_RANK, "priority")
    material_status = _check_choice(data.get("material_status") or "Pending", MATERIAL_STATUSES,
                                    "material_status")
    status = _check_choice(data.get("status") or "pending", SCHEDULE_STATUSES, "status")
    progress = _check_progress(data.get("progress", 0))
    start = parse_date(data.get("start_date"), "start_date")
    finish = parse_date(data.get("finish_date"), "finish_date")
    _check_dates(start, finish)

    raw_assignments = data.get("machine_assignments") or []
    if not isinstance(raw_assignments, list):
        raise ValidationError("machine_assignments must be a list",
                              details={"machine_assignments": "invalid"})
    assignments = [
        _build_assignment(item, sequence=i + 1) for i, item in enumerate(raw_assignments)
    ]
    _validate_assignment_set(assignments)

    if db.session.execute(select(PPICSchedule).where(PPICSchedule.njo == njo)).scalar_one_or_none():
        raise ConflictError("PPICSchedule", "njo", njo)

    schedule = PPICSchedule(
        njo=njo,
        part_name=part_name,
        priority=priority,
        priority_alpha=(data.get("priority_alpha") or "").strip(),
        material_status=material_status,
        status=status,
        progress=progress,
        start_date=start,
        finish_date=finish,
        ppic_notes=data.get("ppic_notes") or "",
        created_by=actor_id,
    )
    schedule.assignments = assignments
    db.session.add(schedule)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("PPICSchedule created id=%s njo=%s", schedule.id, njo, extra={"schedule_id": schedule.id})
    return schedule


def _check_predecessors(schedule: PPICSchedule, new_start: date) -> None:
    """New start must fall after every finish-to-start predecessor's finish."""
    for link in get_links_by_target(schedule.id):
        if link.link_type != LINK_FINISH_TO_START:
            continue
        source = db.session.get(PPICSchedule, link.source_schedule_id)
        if source is not None and new_start <= source.finish_date:
            raise ValidationError(
                f"start_date must be after {source.finish_date.isoformat()} "
                f"(finish of predecessor {source.njo})",
                details={"start_date": "conflicts with predecessor", "predecessor_id": source.id},
            )


def _fs_successor_links(schedule_id: int) -> list[ScheduleLink]:
    return [lk for lk in get_links_by_source(schedule_id) if lk.link_type == LINK_FINISH_TO_START]


def _reachable_count(schedule_id: int) -> int:
    seen = {schedule_id}
    queue = [schedule_id]
    while queue:
        for link in _fs_successor_links(queue.pop(0)):
            if link.target_schedule_id not in seen:
                seen.add(link.target_schedule_id)
                queue.append(link.target_schedule_id)
    return len(seen)


def cascade_reschedule(schedule: PPICSchedule) -> list[int]:
    """Push finish-to-start successors that now overlap, transitively.

    A successor is re-examined every time it moves, so a schedule reached
    along several paths ends up after all of its predecessors.  Returns the
    ids that moved, in first-move order.  Does not commit.

    Raises:
        ValidationError: the links downstream of ``schedule`` form a cycle.
    """
    limit = _reachable_count(schedule.id)
    moves: dict[int, int] = {}
    queue = [schedule]
    while queue:
        current = queue.pop(0)
        for link in _fs_successor_links(current.id):
            target = db.session.get(PPICSchedule, link.target_schedule_id)
            if target is None or not reschedule_target(current, target):
                continue
            moves[target.id] = moves.get(target.id, 0) + 1
            if moves[target.id] > limit:
                raise ValidationError(
                    "Finish-to-start links form a cycle; cannot reschedule",
                    details={"links": "cycle", "schedule_id": target.id},
                )
            queue.append(target)
    return [sid for sid in moves if sid != schedule.id]


def update_schedule(schedule_id: int, data: dict) -> tuple[PPICSchedule, list[int]]:
    """Partial update. Returns (schedule, ids of successors that moved)."""
    schedule = get_schedule(schedule_id)
    fields = {k: v for k, v in data.items() if k in SCHEDULE_EDITABLE_FIELDS}

    if "part_name" in fields:
        fields["part_name"] = (fields["part_name"] or "").strip()
        if not fields["part_name"]:
            raise ValidationError("part_name is required", details={"part_name": "required"})
    if "priority" in fields:
        _check_choice(fields["priority"], PRIORITY_RANK, "priority")
    if "material_status" in fields:
        _check_choice(fields["material_status"], MATERIAL_STATUSES, "material_status")
    if "status" in fields:
        _check_choice(fields["status"], SCHEDULE_STATUSES, "status")
    if "progress" in fields:
        fields["progress"] = _check_progress(fields["progress"])

    new_start = parse_date(fields["start_date"], "start_date") if "start_date" in fields else schedule.start_date
    new_finish = parse_date(fields["finish_date"], "finish_date") if "finish_date" in fields else schedule.finish_date
    _check_dates(new_start, new_finish)
    if new_start != schedule.start_date:
        _check_predecessors(schedule, new_start)
    fields["start_date"], fields["finish_date"] = new_start, new_finish

    dates_changed = (new_start, new_finish) != (schedule.start_date, schedule.finish_date)
    try:
        for key, value in fields.items():
            setattr(schedule, key, value)
        moved = cascade_reschedule(schedule) if dates_changed else []
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("PPICSchedule updated id=%s fields=%s cascaded=%s", schedule.id, sorted(fields), moved,
                extra={"schedule_id": schedule.id})
    return schedule, moved


def delete_schedule(schedule_id: int) -> None:
    """Delete a schedule with its assignments and every link touching it."""
    schedule = get_schedule(schedule_id)
    try:
        db.session.execute(
            delete(ScheduleLink).where(or_(
                ScheduleLink.source_schedule_id == schedule_id,
                ScheduleLink.target_schedule_id == schedule_id,
            )).execution_options(synchronize_session="fetch")
        )
        db.session.execute(
            update(OperationPlan)
            .where(OperationPlan.ppic_schedule_id == schedule_id)
            .values(ppic_schedule_id=None)
            .execution_options(synchronize_session="fetch")
        )
        db.session.delete(schedule)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("PPICSchedule deleted id=%s", schedule_id, extra={"schedule_id": schedule_id})


# ── MachineAssignment ────────────────────────────────────────────────────────


def add_machine_assignment(schedule_id: int, data: dict) -> MachineAssignment:
    """Add one assignment; sequence defaults to the lowest free slot."""
    schedule = get_schedule(schedule_id)
    if len(schedule.assignments) >= MAX_ASSIGNMENTS:
        raise ValidationError(f"Maximum {MAX_ASSIGNMENTS} machine assignments per schedule",
                              details={"machine_assignments": "full"})
    used = {a.sequence for a in schedule.assignments}
    free = next(s for s in range(1, MAX_ASSIGNMENTS + 1) if s not in used)
    assignment = _build_assignment(data, sequence=free)
    if assignment.sequence in used:
        raise ValidationError(f"Sequence {assignment.sequence} is already used on this schedule",
                              details={"sequence": "duplicate"})

    schedule.assignments.append(assignment)
    db.session.commit()
    logger.info("MachineAssignment created id=%s schedule=%s seq=%s", assignment.id, schedule.id,
                assignment.sequence, extra={"schedule_id": schedule.id})
    return assignment


def _get_assignment(schedule_id: int, assignment_id: int) -> MachineAssignment:
    assignment = db.session.get(MachineAssignment, assignment_id)
    if assignment is None or assignment.schedule_id != schedule_id:
        raise NotFoundError(resource="MachineAssignment", resource_id=assignment_id)
    return assignment


def remove_machine_assignment(schedule_id: int, assignment_id: int) -> None:
    """Remove an assignment; the last one cannot be removed."""
    schedule = get_schedule(schedule_id)
    assignment = _get_assignment(schedule_id, assignment_id)
    if len(schedule.assignments) <= MIN_ASSIGNMENTS:
        raise ValidationError("A schedule must keep at least one machine assignment",
                              details={"machine_assignments": "minimum 1"})
    schedule.assignments.remove(assignment)
    db.session.commit()
    logger.info("MachineAssignment deleted id=%s schedule=%s", assignment_id, schedule_id,
                extra={"schedule_id": schedule_id})


def update_assignment(schedule_id: int, assignment_id: int, data: dict) -> MachineAssignment:
    """Update status, hours and actual/scheduled times of one assignment."""
    assignment = _get_assignment(schedule_id, assignment_id)
    if "status" in data:
        _check_choice(data["status"], ASSIGNMENT_STATUSES, "status")
    if "target_hours" in data:
        try:
            hours = float(data["target_hours"])
        except (TypeError, ValueError):
            raise ValidationError("target_hours must be a number", details={"target_hours": "invalid"})
        if hours < 0:
            raise ValidationError("target_hours must be >= 0", details={"target_hours": "negative"})
        assignment.target_hours = hours
    for field in ("scheduled_start", "scheduled_end", "actual_start", "actual_end"):
        if field in data:
            setattr(assignment, field, _parse_dt(data[field], field))
    if "status" in data:
        assignment.status = data["status"]
    db.session.commit()
    return assignment
