"""
Shopfloor Planner
PPIC (production planning & inventory control) scheduling models.

Models:
    - Machine:            machine master data (code, name, status)
    - PPICSchedule:       calendar-placed job order (NJO) spanning start_date..finish_date
    - MachineAssignment:  one machine slot of a schedule, sequence 1..5
    - ScheduleLink:       precedence constraint between two schedules

Architecture:
    PPICSchedule ──1:N──▶ MachineAssignment ──N:1──▶ Machine   (1..5 per schedule)
    PPICSchedule ──N:M──▶ PPICSchedule                          (via ScheduleLink)

Link types:
    finish_to_start (default) | start_to_start | finish_to_finish | start_to_finish
    Legacy Gantt clients send the numeric codes "0".."3"; both are accepted.
"""

from datetime import datetime, timezone

from shopfloor.models import db


# ── Constants ────────────────────────────────────────────────────────────────

# Ranked, most urgent first
PRIORITIES = ["Top Urgent", "Urgent", "Medium", "Low"]
PRIORITY_RANK = {p: i for i, p in enumerate(PRIORITIES)}

PRIORITY_COLORS = {
    "Top Urgent": "#dc3545",   # red
    "Urgent": "#fd7e14",       # orange
    "Medium": "#ffc107",       # yellow
    "Low": "#28a745",          # green
}
DEFAULT_COLOR = "#6c757d"      # gray

MATERIAL_STATUSES = {"Ready", "Pending", "Ordered", "Not Ready"}

SCHEDULE_STATUSES = {"pending", "in_progress", "completed", "on_hold"}

ASSIGNMENT_STATUSES = {"pending", "in_progress", "completed", "on_hold"}

MACHINE_STATUSES = {"active", "maintenance", "inactive"}

MIN_ASSIGNMENTS = 1
MAX_ASSIGNMENTS = 5

LINK_FINISH_TO_START = "finish_to_start"
LINK_START_TO_START = "start_to_start"
LINK_FINISH_TO_FINISH = "finish_to_finish"
LINK_START_TO_FINISH = "start_to_finish"

LINK_TYPES = {
    LINK_FINISH_TO_START, LINK_START_TO_START,
    LINK_FINISH_TO_FINISH, LINK_START_TO_FINISH,
}

# Numeric codes used by Gantt widgets
LINK_TYPE_CODES = {
    "0": LINK_FINISH_TO_START,
    "1": LINK_START_TO_START,
    "2": LINK_FINISH_TO_FINISH,
    "3": LINK_START_TO_FINISH,
}
LINK_CODE_BY_TYPE = {v: k for k, v in LINK_TYPE_CODES.items()}

SCHEDULE_EDITABLE_FIELDS = {
    "part_name", "priority", "priority_alpha", "material_status",
    "status", "progress", "start_date", "finish_date", "ppic_notes",
}


def priority_color(priority):
    """Gantt bar colour for a priority (gray for anything unknown)."""
    return PRIORITY_COLORS.get(priority, DEFAULT_COLOR)


def normalize_link_type(value):
    """Return the canonical link type for ``value`` or None if unknown.

    Empty input means finish_to_start.  Accepts canonical names, the
    hyphenated spelling and the legacy numeric codes.
    """
    text = str(value if value is not None else "").strip().lower()
    if not text:
        return LINK_FINISH_TO_START
    if text in LINK_TYPE_CODES:
        return LINK_TYPE_CODES[text]
    text = text.replace("-", "_")
    return text if text in LINK_TYPES else None


def _iso(dt):
    return dt.isoformat() if dt else None


class Machine(db.Model):
    __tablename__ = "machines"

    id = db.Column(db.Integer, primary_key=True)
    machine_code = db.Column(db.String(50), nullable=False, unique=True)
    machine_name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), default="active")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "machine_code": self.machine_code,
            "machine_name": self.machine_name,
            "status": self.status,
        }

    def __repr__(self):
        return f"<Machine {self.id}: {self.machine_code}>"


class PPICSchedule(db.Model):
    """
    One job order on the production calendar.

    start_date / finish_date are whole days; duration is their difference
    and is preserved whenever the schedule is pushed by a dependency.
    """

    __tablename__ = "ppic_schedules"

    id = db.Column(db.Integer, primary_key=True)
    njo = db.Column(db.String(50), nullable=False, unique=True, comment="Job order number")
    part_name = db.Column(db.String(200), nullable=False)
    priority = db.Column(db.String(20), nullable=False, default="Medium")
    priority_alpha = db.Column(db.String(10), default="")
    material_status = db.Column(db.String(20), nullable=False, default="Pending")
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    progress = db.Column(db.Integer, nullable=False, default=0)
    start_date = db.Column(db.Date, nullable=False, index=True)
    finish_date = db.Column(db.Date, nullable=False)
    ppic_notes = db.Column(db.Text, default="")

    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint("finish_date >= start_date", name="ck_ppic_schedule_dates"),
        db.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_ppic_schedule_progress"),
    )

    assignments = db.relationship(
        "MachineAssignment", backref="schedule", lazy="selectin",
        cascade="all, delete-orphan",
        order_by="MachineAssignment.sequence",
    )

    @property
    def duration(self):
        return self.finish_date - self.start_date

    @property
    def machine_ids(self) -> set[int]:
        return {a.machine_id for a in self.assignments}

    def to_dict(self, include_assignments=True):
        result = {
            "id": self.id,
            "njo": self.njo,
            "part_name": self.part_name,
            "priority": self.priority,
            "priority_alpha": self.priority_alpha,
            "material_status": self.material_status,
            "status": self.status,
            "progress": self.progress,
            "start_date": _iso(self.start_date),
            "finish_date": _iso(self.finish_date),
            "ppic_notes": self.ppic_notes,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_assignments:
            result["machine_assignments"] = [a.to_dict() for a in self.assignments]
        return result

    def __repr__(self):
        return f"<PPICSchedule {self.id}: {self.njo} {self.start_date}..{self.finish_date}>"


class MachineAssignment(db.Model):
    """One machine slot of a schedule; sequence is unique per schedule."""

    __tablename__ = "machine_assignments"

    id = db.Column(db.Integer, primary_key=True)
    schedule_id = db.Column(
        db.Integer, db.ForeignKey("ppic_schedules.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    machine_id = db.Column(
        db.Integer, db.ForeignKey("machines.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    sequence = db.Column(db.Integer, nullable=False)
    target_hours = db.Column(db.Float, default=0.0)
    scheduled_start = db.Column(db.DateTime(timezone=True), nullable=True)
    scheduled_end = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_start = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_end = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("schedule_id", "sequence", name="uq_assignment_sequence"),
        db.CheckConstraint("sequence >= 1 AND sequence <= 5", name="ck_assignment_sequence_range"),
    )

    machine = db.relationship("Machine", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "machine_id": self.machine_id,
            "machine_code": self.machine.machine_code if self.machine else None,
            "machine_name": self.machine.machine_name if self.machine else None,
            "sequence": self.sequence,
            "target_hours": self.target_hours,
            "scheduled_start": _iso(self.scheduled_start),
            "scheduled_end": _iso(self.scheduled_end),
            "actual_start": _iso(self.actual_start),
            "actual_end": _iso(self.actual_end),
            "status": self.status,
        }

    def __repr__(self):
        return f"<MachineAssignment {self.id}: schedule={self.schedule_id} #{self.sequence} machine={self.machine_id}>"


class ScheduleLink(db.Model):
    """
    Source → target precedence between schedules.

    Both ends are plain id references; links are removed with either
    schedule (see ppic_schedule_service.delete_schedule).
    """

    __tablename__ = "schedule_links"

    id = db.Column(db.Integer, primary_key=True)
    source_schedule_id = db.Column(
        db.Integer, db.ForeignKey("ppic_schedules.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    target_schedule_id = db.Column(
        db.Integer, db.ForeignKey("ppic_schedules.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    link_type = db.Column(
        db.String(30), nullable=False, default=LINK_FINISH_TO_START,
        comment="finish_to_start | start_to_start | finish_to_finish | start_to_finish",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("source_schedule_id", "target_schedule_id", name="uq_schedule_link"),
        db.CheckConstraint("source_schedule_id != target_schedule_id", name="ck_schedule_link_no_self_loop"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "source_schedule_id": self.source_schedule_id,
            "target_schedule_id": self.target_schedule_id,
            "link_type": self.link_type,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ScheduleLink {self.id}: {self.source_schedule_id} -> {self.target_schedule_id} ({self.link_type})>"
