"""
Shopfloor Planner
Operation plan domain models.

Models:
    - OperationPlan:      multi-step machining plan that needs sign-off from every approver role
    - OperationPlanStep:  ordered step of a plan (clamping, process, checking method...)
    - PlanApproval:       one approval record per (plan, role); the approval ledger

Architecture:
    OperationPlan ──1:N──▶ OperationPlanStep
    OperationPlan ──1:5──▶ PlanApproval   (one per ApproverRole, created with the plan)
    OperationPlan ──N:1──▶ PPICSchedule   (optional link, moved to in_progress on approval)

Lifecycle states:
    OperationPlan:  draft → pending_approval → approved
                                             → rejected
    PlanApproval:   pending → approved | rejected
"""

import enum
from datetime import datetime, timezone

from shopfloor.models import db


# ── Constants ────────────────────────────────────────────────────────────────


class ApproverRole(str, enum.Enum):
    """Closed set of roles whose sign-off every plan needs."""

    PEM = "PEM"
    TOOLPATHER = "Toolpather"
    QC = "QC"
    CUSTOM1 = "Custom1"
    CUSTOM2 = "Custom2"

    @classmethod
    def parse(cls, value):
        """Return the member for ``value`` or None (case-insensitive)."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        return None


APPROVER_ROLES = [r.value for r in ApproverRole]

PLAN_STATUSES = {"draft", "pending_approval", "approved", "rejected"}

APPROVAL_STATUSES = {"pending", "approved", "rejected"}

PLAN_TRANSITIONS = {
    "draft":            ["pending_approval"],
    "pending_approval": ["approved", "rejected"],
    "approved":         [],
    "rejected":         [],
}

# Fields a creator may edit while the plan is a draft
PLAN_EDITABLE_FIELDS = {
    "part_name", "material", "dial_size", "quantity",
    "revision", "no_wp", "page", "ppic_schedule_id",
}

STEP_EDITABLE_FIELDS = {
    "step_number", "picture_url", "picture_filename", "clamping_system",
    "raw_material", "setting", "process", "note", "checking_method",
}


def validate_plan_transition(old_status, new_status):
    """Return True if OperationPlan status transition is valid."""
    return new_status in PLAN_TRANSITIONS.get(old_status, [])


def _iso(dt):
    return dt.isoformat() if dt else None


class OperationPlan(db.Model):
    """
    Operation plan ("form") for one part.

    form_number is generated as FRM-YYYYMMDD-NNN, counting plans created
    the same day.
    """

    __tablename__ = "operation_plans"

    id = db.Column(db.Integer, primary_key=True)
    form_number = db.Column(db.String(30), nullable=False, unique=True)
    ppic_schedule_id = db.Column(
        db.Integer, db.ForeignKey("ppic_schedules.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    part_name = db.Column(db.String(200), nullable=False)
    material = db.Column(db.String(200), default="")
    dial_size = db.Column(db.String(100), default="")
    quantity = db.Column(db.Integer, default=1)
    revision = db.Column(db.String(30), default="")
    no_wp = db.Column(db.String(50), default="")
    page = db.Column(db.String(30), default="")
    status = db.Column(db.String(30), nullable=False, default="draft", index=True)

    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('draft', 'pending_approval', 'approved', 'rejected')",
            name="ck_operation_plan_status",
        ),
        db.CheckConstraint("quantity >= 1", name="ck_operation_plan_quantity"),
    )

    # ── Relationships ────────────────────────────────────────────────────
    steps = db.relationship(
        "OperationPlanStep", backref="plan", lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OperationPlanStep.step_number",
    )
    approvals = db.relationship(
        "PlanApproval", backref="plan", lazy="selectin",
        cascade="all, delete-orphan",
        order_by="PlanApproval.id",
    )
    creator = db.relationship("User", foreign_keys=[created_by])

    def approval_for(self, role):
        role = ApproverRole.parse(role)
        if role is None:
            return None
        for approval in self.approvals:
            if approval.approver_role == role.value:
                return approval
        return None

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "form_number": self.form_number,
            "ppic_schedule_id": self.ppic_schedule_id,
            "part_name": self.part_name,
            "material": self.material,
            "dial_size": self.dial_size,
            "quantity": self.quantity,
            "revision": self.revision,
            "no_wp": self.no_wp,
            "page": self.page,
            "status": self.status,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children:
            result["steps"] = [s.to_dict() for s in self.steps]
            result["approvals"] = [a.to_dict() for a in self.approvals]
        return result

    def __repr__(self):
        return f"<OperationPlan {self.id}: {self.form_number} [{self.status}]>"


class OperationPlanStep(db.Model):
    """Ordered machining step; step_number is unique within its plan."""

    __tablename__ = "operation_plan_steps"

    id = db.Column(db.Integer, primary_key=True)
    operation_plan_id = db.Column(
        db.Integer, db.ForeignKey("operation_plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_number = db.Column(db.Integer, nullable=False)
    picture_url = db.Column(db.String(500), default="")
    picture_filename = db.Column(db.String(255), default="")
    clamping_system = db.Column(db.Text, default="")
    raw_material = db.Column(db.Text, default="")
    setting = db.Column(db.Text, default="")
    process = db.Column(db.Text, default="")
    note = db.Column(db.Text, default="")
    checking_method = db.Column(db.Text, default="")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("operation_plan_id", "step_number", name="uq_plan_step_number"),
        db.CheckConstraint("step_number >= 1", name="ck_plan_step_number_positive"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "operation_plan_id": self.operation_plan_id,
            "step_number": self.step_number,
            "picture_url": self.picture_url,
            "picture_filename": self.picture_filename,
            "clamping_system": self.clamping_system,
            "raw_material": self.raw_material,
            "setting": self.setting,
            "process": self.process,
            "note": self.note,
            "checking_method": self.checking_method,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<OperationPlanStep {self.id}: plan={self.operation_plan_id} #{self.step_number}>"


class PlanApproval(db.Model):
    """
    One sign-off slot of a plan.

    Created in bulk with the plan (status pending, no approver), assigned
    while the plan is a draft, decided exactly once by its approver.
    """

    __tablename__ = "plan_approvals"

    id = db.Column(db.Integer, primary_key=True)
    operation_plan_id = db.Column(
        db.Integer, db.ForeignKey("operation_plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    approver_role = db.Column(db.String(20), nullable=False)
    approver_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    status = db.Column(db.String(20), nullable=False, default="pending")
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comments = db.Column(db.Text, default="")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("operation_plan_id", "approver_role", name="uq_plan_approval_role"),
        db.CheckConstraint(
            "approver_role IN ('PEM', 'Toolpather', 'QC', 'Custom1', 'Custom2')",
            name="ck_plan_approval_role",
        ),
        db.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_plan_approval_status",
        ),
    )

    approver = db.relationship("User", foreign_keys=[approver_id])

    @property
    def role(self) -> ApproverRole:
        return ApproverRole(self.approver_role)

    def to_dict(self):
        return {
            "id": self.id,
            "operation_plan_id": self.operation_plan_id,
            "approver_role": self.approver_role,
            "approver_id": self.approver_id,
            "approver_name": self.approver.full_name if self.approver else None,
            "status": self.status,
            "approved_at": _iso(self.approved_at),
            "comments": self.comments,
        }

    def __repr__(self):
        return f"<PlanApproval {self.id}: plan={self.operation_plan_id} {self.approver_role} [{self.status}]>"
