"""
Operation plan administration service.

Plan and step CRUD plus approver assignment.  Everything here operates on
draft plans only and only on behalf of the plan's creator; once a plan is
submitted the approval workflow (approval_service) owns it.

Design decisions:
    - A plan is created together with one pending PlanApproval per
      ApproverRole, in the same transaction, so the ledger always has
      exactly five rows per plan.
    - form_number is FRM-YYYYMMDD-NNN where NNN continues the highest
      number issued that day; a unique-constraint clash on insert is
      retried with the next number.
    - Services raise shopfloor.core.exceptions types; blueprints never
      build error responses for business rules themselves.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from shopfloor.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from shopfloor.models import db
from shopfloor.models.auth import User, find_user
from shopfloor.models.operation_plan import (
    APPROVER_ROLES,
    PLAN_EDITABLE_FIELDS,
    PLAN_STATUSES,
    STEP_EDITABLE_FIELDS,
    ApproverRole,
    OperationPlan,
    OperationPlanStep,
    PlanApproval,
)
from shopfloor.models.ppic import PPICSchedule

logger = logging.getLogger(__name__)

FORM_NUMBER_ATTEMPTS = 3


# ── Code Generation ──────────────────────────────────────────────────────────


def generate_form_number(today=None) -> str:
    """Next FRM-YYYYMMDD-NNN for ``today`` (UTC date by default)."""
    today = today or datetime.now(timezone.utc).date()
    prefix = f"FRM-{today.strftime('%Y%m%d')}-"
    last = db.session.execute(
        select(func.max(OperationPlan.form_number))
        .where(OperationPlan.form_number.like(f"{prefix}%"))
    ).scalar()
    seq = 1
    if last:
        try:
            seq = int(last.rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            seq = db.session.execute(
                select(func.count(OperationPlan.id))
                .where(OperationPlan.form_number.like(f"{prefix}%"))
            ).scalar() + 1
    return f"{prefix}{seq:03d}"


# ── Private helpers ──────────────────────────────────────────────────────────


def get_plan(plan_id: int) -> OperationPlan:
    """Load a plan or raise NotFoundError."""
    plan = db.session.get(OperationPlan, plan_id)
    if plan is None:
        raise NotFoundError(resource="OperationPlan", resource_id=plan_id)
    return plan


def _require_creator(plan: OperationPlan, actor_id: int, action: str) -> None:
    if plan.created_by != actor_id:
        raise ForbiddenError(f"Only the plan creator can {action}")


def _require_draft(plan: OperationPlan, action: str) -> None:
    if plan.status != "draft":
        raise InvalidStateError(
            f"Cannot {action}: plan is {plan.status}, expected draft",
            current_status=plan.status,
        )


def _editable_plan(plan_id: int, actor_id: int, action: str) -> OperationPlan:
    plan = get_plan(plan_id)
    _require_creator(plan, actor_id, action)
    _require_draft(plan, action)
    return plan


def _parse_quantity(value) -> int:
    try:
        qty = int(value)
    except (TypeError, ValueError):
        raise ValidationError("quantity must be an integer", details={"quantity": "invalid"})
    if qty < 1:
        raise ValidationError("quantity must be >= 1", details={"quantity": "min 1"})
    return qty


def _check_schedule_ref(schedule_id):
    if schedule_id in (None, ""):
        return None
    try:
        schedule_id = int(schedule_id)
    except (TypeError, ValueError):
        raise ValidationError("ppic_schedule_id must be an integer",
                              details={"ppic_schedule_id": "invalid"})
    if db.session.get(PPICSchedule, schedule_id) is None:
        raise NotFoundError(resource="PPICSchedule", resource_id=schedule_id)
    return schedule_id


def _clean_plan_fields(data: dict) -> dict:
    fields = {k: v for k, v in data.items() if k in PLAN_EDITABLE_FIELDS}
    if "part_name" in fields:
        fields["part_name"] = (fields["part_name"] or "").strip()
        if not fields["part_name"]:
            raise ValidationError("part_name is required", details={"part_name": "required"})
    if "quantity" in fields:
        fields["quantity"] = _parse_quantity(fields["quantity"])
    if "ppic_schedule_id" in fields:
        fields["ppic_schedule_id"] = _check_schedule_ref(fields["ppic_schedule_id"])
    for key in ("material", "dial_size", "revision", "no_wp", "page"):
        if key in fields:
            fields[key] = "" if fields[key] is None else str(fields[key]).strip()
    return fields


# ── OperationPlan CRUD ───────────────────────────────────────────────────────


def create_plan(data: dict, actor_id: int) -> OperationPlan:
    """Create a draft plan with one pending approval record per role.

    Two creators racing for the same form_number both compute it; the
    loser's insert hits the unique constraint and is retried with a fresh
    number.

    Raises:
        ConflictError: no free form_number after FORM_NUMBER_ATTEMPTS tries.
    """
    if not (data.get("part_name") or "").strip():
        raise ValidationError("part_name is required", details={"part_name": "required"})
    if find_user(actor_id) is None:
        raise NotFoundError(resource="User", resource_id=actor_id)

    fields = _clean_plan_fields(data)
    for attempt in range(1, FORM_NUMBER_ATTEMPTS + 1):
        plan = OperationPlan(
            form_number=generate_form_number(),
            status="draft",
            created_by=actor_id,
            **fields,
        )
        plan.approvals = [
            PlanApproval(approver_role=role.value, status="pending")
            for role in ApproverRole
        ]
        db.session.add(plan)
        try:
            db.session.commit()
            break
        except IntegrityError:
            db.session.rollback()
            logger.warning("form_number %s taken, retrying (attempt %d)", plan.form_number, attempt,
                           extra={"user_id": actor_id})
        except Exception:
            db.session.rollback()
            raise
    else:
        raise ConflictError("OperationPlan", "form_number", plan.form_number)

    logger.info("OperationPlan created id=%s form=%s", plan.id, plan.form_number,
                extra={"plan_id": plan.id, "user_id": actor_id})
    return plan


def list_plans(status: str | None = None, created_by: int | None = None) -> list[OperationPlan]:
    """Plans newest first, optionally filtered by status and creator."""
    stmt = select(OperationPlan)
    if status:
        if status not in PLAN_STATUSES:
            raise ValidationError(
                f"Invalid status. Must be one of: {sorted(PLAN_STATUSES)}",
                details={"status": "invalid"},
            )
        stmt = stmt.where(OperationPlan.status == status)
    if created_by is not None:
        stmt = stmt.where(OperationPlan.created_by == created_by)
    stmt = stmt.order_by(OperationPlan.created_at.desc(), OperationPlan.id.desc())
    return db.session.execute(stmt).scalars().all()


def update_plan(plan_id: int, data: dict, actor_id: int) -> OperationPlan:
    plan = _editable_plan(plan_id, actor_id, "update this plan")
    fields = _clean_plan_fields(data)
    for key, value in fields.items():
        setattr(plan, key, value)
    db.session.commit()
    logger.info("OperationPlan updated id=%s fields=%s", plan.id, sorted(fields),
                extra={"plan_id": plan.id, "user_id": actor_id})
    return plan


def delete_plan(plan_id: int, actor_id: int) -> None:
    plan = _editable_plan(plan_id, actor_id, "delete this plan")
    db.session.delete(plan)
    db.session.commit()
    logger.info("OperationPlan deleted id=%s", plan_id, extra={"plan_id": plan_id, "user_id": actor_id})


# ── OperationPlanStep CRUD ───────────────────────────────────────────────────


def _clean_step_fields(data: dict) -> dict:
    fields = {k: v for k, v in data.items() if k in STEP_EDITABLE_FIELDS}
    if "step_number" in fields:
        try:
            fields["step_number"] = int(fields["step_number"])
        except (TypeError, ValueError):
            raise ValidationError("step_number must be an integer", details={"step_number": "invalid"})
        if fields["step_number"] < 1:
            raise ValidationError("step_number must be >= 1", details={"step_number": "min 1"})
    for key in STEP_EDITABLE_FIELDS - {"step_number"}:
        if key in fields:
            fields[key] = "" if fields[key] is None else str(fields[key])
    return fields


def _step_number_taken(plan: OperationPlan, step_number: int, exclude_id=None) -> bool:
    return any(s.step_number == step_number and s.id != exclude_id for s in plan.steps)


def add_step(plan_id: int, data: dict, actor_id: int) -> OperationPlanStep:
    """Append a step. step_number defaults to the next free number."""
    plan = _editable_plan(plan_id, actor_id, "add steps")
    fields = _clean_step_fields(data)
    if "step_number" not in fields:
        fields["step_number"] = max((s.step_number for s in plan.steps), default=0) + 1
    elif _step_number_taken(plan, fields["step_number"]):
        raise ConflictError("OperationPlanStep", "step_number", str(fields["step_number"]))

    step = OperationPlanStep(operation_plan_id=plan.id, **fields)
    db.session.add(step)
    db.session.commit()
    logger.info("OperationPlanStep created id=%s plan=%s #%s", step.id, plan.id, step.step_number,
                extra={"plan_id": plan.id})
    return step


def _get_step(plan: OperationPlan, step_id: int) -> OperationPlanStep:
    step = db.session.get(OperationPlanStep, step_id)
    if step is None or step.operation_plan_id != plan.id:
        raise NotFoundError(resource="OperationPlanStep", resource_id=step_id)
    return step


def update_step(plan_id: int, step_id: int, data: dict, actor_id: int) -> OperationPlanStep:
    plan = _editable_plan(plan_id, actor_id, "update steps")
    step = _get_step(plan, step_id)
    fields = _clean_step_fields(data)
    if "step_number" in fields and _step_number_taken(plan, fields["step_number"], exclude_id=step.id):
        raise ConflictError("OperationPlanStep", "step_number", str(fields["step_number"]))
    for key, value in fields.items():
        setattr(step, key, value)
    db.session.commit()
    return step


def delete_step(plan_id: int, step_id: int, actor_id: int) -> None:
    plan = _editable_plan(plan_id, actor_id, "delete steps")
    step = _get_step(plan, step_id)
    db.session.delete(step)
    db.session.commit()
    logger.info("OperationPlanStep deleted id=%s plan=%s", step_id, plan.id, extra={"plan_id": plan.id})


# ── Approver assignment ──────────────────────────────────────────────────────


def assign_approvers(plan_id: int, assignments: dict, actor_id: int) -> list[PlanApproval]:
    """Bind a user to every approver role of a draft plan.

    Args:
        assignments: ``{role: user_id}`` for all five roles. Role names are
            matched case-insensitively against ApproverRole.

    Raises:
        ForbiddenError: actor is not the creator.
        InvalidStateError: plan is no longer a draft.
        ValidationError: unknown role, missing role, or an approver that does
            not exist or is inactive.
    """
    plan = _editable_plan(plan_id, actor_id, "assign approvers")

    if not isinstance(assignments, dict) or not assignments:
        raise ValidationError("approvers must be an object of role -> user_id",
                              details={"approvers": "required"})

    resolved: dict[ApproverRole, User] = {}
    errors: dict[str, str] = {}
    for raw_role, user_id in assignments.items():
        role = ApproverRole.parse(raw_role)
        if role is None:
            errors[str(raw_role)] = f"unknown role, expected one of {APPROVER_ROLES}"
            continue
        user = find_user(user_id)
        if user is None:
            errors[role.value] = f"user {user_id} not found"
        elif not user.is_active:
            errors[role.value] = f"user {user_id} is inactive"
        else:
            resolved[role] = user

    missing = [r.value for r in ApproverRole if r not in resolved and r.value not in errors]
    for role_name in missing:
        errors[role_name] = "approver required"
    if errors:
        raise ValidationError("Invalid approver assignment", details=errors)

    for approval in plan.approvals:
        approval.approver_id = resolved[approval.role].id
    db.session.commit()
    logger.info("Approvers assigned plan=%s", plan.id, extra={"plan_id": plan.id, "user_id": actor_id})
    return list(plan.approvals)
