"""
Operation plan approval workflow — the quorum engine.

A submitted plan needs an approval from every ApproverRole.  It becomes
``approved`` when the last pending record is approved and ``rejected`` as
soon as any single record is rejected.  Both outcomes are terminal.

Design decisions:
    - Every public operation is one transaction: commit on success,
      rollback on any failure.
    - The plan row is read with SELECT ... FOR UPDATE so concurrent
      decisions on the same plan serialise (SQLite file databases get the
      same effect from BEGIN IMMEDIATE, see shopfloor/__init__.py).
    - The record flip is a compare-and-swap
      (UPDATE ... WHERE status='pending'); losing the race surfaces as
      AlreadyProcessedError, never as a silent double approval.
    - The plan flip is guarded by WHERE status='pending_approval', so when
      the last two approvals land together exactly one caller sees
      rowcount == 1 and only that caller emits ``plan_approved``.
    - Notifications and the linked-schedule kick-off run after commit and
      are best effort; their failures are logged, never raised.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import NamedTuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from shopfloor.core.exceptions import (
    AlreadyProcessedError,
    ForbiddenError,
    IncompletePrerequisiteError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from shopfloor.models import db
from shopfloor.models.operation_plan import (
    APPROVAL_STATUSES,
    APPROVER_ROLES,
    ApproverRole,
    OperationPlan,
    PlanApproval,
    validate_plan_transition,
)
from shopfloor.models.ppic import PPICSchedule
from shopfloor.services import notification

logger = logging.getLogger(__name__)


class Decision(NamedTuple):
    plan: OperationPlan
    approval: PlanApproval
    plan_transitioned: bool  # True only for the caller that moved the plan


# ── Private helpers ────────────────────────────────────────────────────────────


def _parse_role(role) -> ApproverRole:
    parsed = ApproverRole.parse(role)
    if parsed is None:
        raise ValidationError(
            f"Invalid approver_role '{role}'. Must be one of: {', '.join(APPROVER_ROLES)}",
            details={"approver_role": "invalid"},
        )
    return parsed


def _lock_plan(plan_id: int) -> OperationPlan:
    plan = db.session.execute(
        select(OperationPlan)
        .where(OperationPlan.id == plan_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if plan is None:
        raise NotFoundError(resource="OperationPlan", resource_id=plan_id)
    return plan


def _load_decidable_record(plan: OperationPlan, role: ApproverRole, approver_id: int) -> PlanApproval:
    if plan.status != "pending_approval":
        raise InvalidStateError(
            f"Plan is {plan.status}, expected pending_approval",
            current_status=plan.status,
        )
    record = db.session.execute(
        select(PlanApproval).where(
            PlanApproval.operation_plan_id == plan.id,
            PlanApproval.approver_role == role.value,
            PlanApproval.approver_id == approver_id,
        )
    ).scalar_one_or_none()
    if record is None:
        raise NotFoundError(resource=f"PlanApproval[{role.value}] for approver", resource_id=approver_id)
    if record.status != "pending":
        raise AlreadyProcessedError(
            f"{role.value} approval already {record.status}",
            details={"approver_role": role.value, "status": record.status},
        )
    return record


def _swap_record(record_id: int, new_status: str, comments: str, now: datetime) -> None:
    """Compare-and-swap pending → new_status on one approval record."""
    result = db.session.execute(
        update(PlanApproval)
        .where(PlanApproval.id == record_id, PlanApproval.status == "pending")
        .values(status=new_status, approved_at=now, comments=comments or "", updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise AlreadyProcessedError("Approval not found or already processed")


def _swap_plan(plan_id: int, new_status: str, now: datetime) -> bool:
    """Move a pending_approval plan to ``new_status``; True if this call did it."""
    result = db.session.execute(
        update(OperationPlan)
        .where(OperationPlan.id == plan_id, OperationPlan.status == "pending_approval")
        .values(status=new_status, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def _start_linked_schedule(plan_id: int, schedule_id: int | None) -> None:
    """Best effort: an approved plan releases its PPIC schedule to the floor."""
    if not schedule_id:
        return
    try:
        db.session.execute(
            update(PPICSchedule)
            .where(PPICSchedule.id == schedule_id)
            .values(status="in_progress", updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session="fetch")
        )
        db.session.commit()
        logger.info("PPICSchedule id=%s moved to in_progress by plan=%s", schedule_id, plan_id,
                    extra={"plan_id": plan_id, "schedule_id": schedule_id})
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to start PPICSchedule id=%s for approved plan=%s", schedule_id, plan_id,
                         extra={"plan_id": plan_id, "schedule_id": schedule_id})


def _payload(plan_id: int, form_number: str, **extra) -> dict:
    payload = {
        "plan_id": plan_id,
        "form_number": form_number,
        "entity_type": "operation_plan",
        "entity_id": plan_id,
    }
    payload.update(extra)
    return payload


# ── Public API ─────────────────────────────────────────────────────────────────


def submit_for_approval(plan_id: int, actor_id: int) -> OperationPlan:
    """Move a draft plan to pending_approval and notify every approver.

    Raises:
        NotFoundError: unknown plan.
        ForbiddenError: actor is not the creator.
        InvalidStateError: plan is not a draft.
        IncompletePrerequisiteError: a role has no approver, or the plan
            has no steps.
    """
    try:
        plan = _lock_plan(plan_id)
        if plan.created_by != actor_id:
            raise ForbiddenError("Only the plan creator can submit it for approval")
        if not validate_plan_transition(plan.status, "pending_approval"):
            raise InvalidStateError(
                f"Only draft plans can be submitted (plan is {plan.status})",
                current_status=plan.status,
            )
        missing = [a.approver_role for a in plan.approvals if a.approver_id is None]
        if missing or len(plan.approvals) != len(APPROVER_ROLES):
            missing = missing or [r for r in APPROVER_ROLES if plan.approval_for(r) is None]
            raise IncompletePrerequisiteError(
                "All approver roles must be assigned before submission",
                details={"missing_roles": missing},
            )
        if not plan.steps:
            raise IncompletePrerequisiteError(
                "Plan needs at least one step before submission",
                details={"steps": "required"},
            )

        now = datetime.now(timezone.utc)
        result = db.session.execute(
            update(OperationPlan)
            .where(OperationPlan.id == plan.id, OperationPlan.status == "draft")
            .values(status="pending_approval", updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise InvalidStateError("Plan was submitted concurrently", current_status="pending_approval")

        recipients = [(a.approver_id, a.approver_role) for a in plan.approvals]
        form_number = plan.form_number
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("OperationPlan submitted id=%s", plan_id, extra={"plan_id": plan_id, "user_id": actor_id})
    for approver_id, role in recipients:
        notification.dispatch(
            approver_id, "approval_requested", _payload(plan_id, form_number, role=role),
        )
    return db.session.get(OperationPlan, plan_id)


def approve_plan(plan_id: int, approver_id: int, role, comments: str = "") -> Decision:
    """Record an approval; flips the plan to approved when none are pending.

    Raises:
        NotFoundError: unknown plan, or no record for ``role`` held by
            ``approver_id``.
        InvalidStateError: plan is not pending_approval.
        AlreadyProcessedError: the record was already decided.
        ValidationError: unknown role.
    """
    role = _parse_role(role)
    try:
        plan = _lock_plan(plan_id)
        record = _load_decidable_record(plan, role, approver_id)
        now = datetime.now(timezone.utc)
        _swap_record(record.id, "approved", comments, now)

        pending = db.session.execute(
            select(func.count(PlanApproval.id)).where(
                PlanApproval.operation_plan_id == plan_id,
                PlanApproval.status == "pending",
            )
        ).scalar()
        transitioned = pending == 0 and _swap_plan(plan_id, "approved", now)

        creator_id = plan.created_by
        form_number = plan.form_number
        schedule_id = plan.ppic_schedule_id
        record_id = record.id
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Plan approval recorded plan=%s role=%s approver=%s pending=%s",
        plan_id, role.value, approver_id, pending,
        extra={"plan_id": plan_id, "approver_role": role.value, "user_id": approver_id},
    )
    if transitioned:
        logger.info("OperationPlan approved id=%s", plan_id, extra={"plan_id": plan_id})
        _start_linked_schedule(plan_id, schedule_id)
        notification.dispatch(creator_id, "plan_approved", _payload(plan_id, form_number))

    return Decision(
        db.session.get(OperationPlan, plan_id),
        db.session.get(PlanApproval, record_id),
        transitioned,
    )


def reject_plan(plan_id: int, approver_id: int, role, comments: str = "") -> Decision:
    """Record a rejection; the plan is rejected immediately (terminal).

    Same preconditions and errors as ``approve_plan``.
    """
    role = _parse_role(role)
    try:
        plan = _lock_plan(plan_id)
        record = _load_decidable_record(plan, role, approver_id)
        now = datetime.now(timezone.utc)
        _swap_record(record.id, "rejected", comments, now)
        if not _swap_plan(plan_id, "rejected", now):
            raise InvalidStateError("Plan was decided concurrently")

        creator_id = plan.created_by
        form_number = plan.form_number
        record_id = record.id
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "OperationPlan rejected id=%s role=%s approver=%s", plan_id, role.value, approver_id,
        extra={"plan_id": plan_id, "approver_role": role.value, "user_id": approver_id},
    )
    notification.dispatch(
        creator_id, "plan_rejected",
        _payload(plan_id, form_number, role=role.value, message=comments or ""),
    )
    return Decision(
        db.session.get(OperationPlan, plan_id),
        db.session.get(PlanApproval, record_id),
        True,
    )


def get_pending_approvals_for_approver(approver_id: int) -> list[PlanApproval]:
    """Undecided records held by ``approver_id`` on plans awaiting approval,
    newest plan first.  Each record exposes its plan via ``.plan``."""
    stmt = (
        select(PlanApproval)
        .join(OperationPlan, PlanApproval.operation_plan_id == OperationPlan.id)
        .where(
            PlanApproval.approver_id == approver_id,
            PlanApproval.status == "pending",
            OperationPlan.status == "pending_approval",
        )
        .order_by(OperationPlan.created_at.desc(), OperationPlan.id.desc())
    )
    return db.session.execute(stmt).scalars().all()


def get_approval_status(plan_id: int) -> list[PlanApproval]:
    """The plan's five records in role order."""
    plan = db.session.get(OperationPlan, plan_id)
    if plan is None:
        raise NotFoundError(resource="OperationPlan", resource_id=plan_id)
    order = {role: i for i, role in enumerate(APPROVER_ROLES)}
    return sorted(plan.approvals, key=lambda a: order.get(a.approver_role, len(order)))


def summarize(approvals: list[PlanApproval]) -> dict:
    """Counts per record status."""
    counts = dict.fromkeys(sorted(APPROVAL_STATUSES), 0)
    for a in approvals:
        counts[a.status] = counts.get(a.status, 0) + 1
    counts["total"] = len(approvals)
    return counts
