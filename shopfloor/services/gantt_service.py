"""
Gantt projection for PPIC schedules.

Read-only: filters the schedules, orders them by priority rank then start
date, and groups them into sections.

Grouping:
    priority  one section per priority (Top Urgent → Low), empty ones omitted
    machine   one section per machine; a schedule on three machines appears
              in three sections
    (other)   a single "All Tasks" section

The summary block always describes the unfiltered set so dashboards keep
their totals while the chart is narrowed.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date

from sqlalchemy import select

from shopfloor.core.exceptions import ValidationError
from shopfloor.models import db
from shopfloor.models.ppic import (
    LINK_CODE_BY_TYPE,
    PRIORITIES,
    PRIORITY_RANK,
    Machine,
    PPICSchedule,
    ScheduleLink,
    priority_color,
)

GROUP_BY_OPTIONS = {"priority", "machine", "all"}


@dataclass
class GanttFilter:
    start_date: date | None = None
    end_date: date | None = None
    machine_id: int | None = None
    priority: str | None = None
    status: str | None = None
    group_by: str = "all"

    def matches(self, item) -> bool:
        if self.start_date and item.start_date < self.start_date:
            return False
        if self.end_date and item.finish_date > self.end_date:
            return False
        if self.machine_id is not None and self.machine_id not in {a.machine_id for a in item.assignments}:
            return False
        if self.priority and item.priority != self.priority:
            return False
        if self.status and item.status != self.status:
            return False
        return True

    def applied(self) -> dict:
        data = asdict(self)
        data.pop("group_by")
        for key in ("start_date", "end_date"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def _parse_filter_date(value, field):
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError(f"Invalid {field} '{value}', expected YYYY-MM-DD", details={field: "invalid"})


def parse_filters(args) -> GanttFilter:
    """Build a GanttFilter from query-string style ``args``."""
    start = _parse_filter_date(args.get("start_date"), "start_date")
    end = _parse_filter_date(args.get("end_date"), "end_date")
    if start and end and start > end:
        raise ValidationError("start_date must be on or before end_date",
                              details={"start_date": "after end_date"})

    machine_id = args.get("machine_id")
    if machine_id in (None, ""):
        machine_id = None
    else:
        try:
            machine_id = int(machine_id)
        except (TypeError, ValueError):
            raise ValidationError("machine_id must be an integer", details={"machine_id": "invalid"})

    group_by = (args.get("group_by") or "all").strip().lower()
    if group_by not in GROUP_BY_OPTIONS:
        group_by = "all"

    return GanttFilter(
        start_date=start,
        end_date=end,
        machine_id=machine_id,
        priority=args.get("priority") or None,
        status=args.get("status") or None,
        group_by=group_by,
    )


# ── Projection ───────────────────────────────────────────────────────────────


def _sort_key(item):
    return (PRIORITY_RANK.get(item.priority, len(PRIORITY_RANK)), item.start_date, item.id)


def _machine_name(machines: dict, machine_id) -> str:
    machine = machines.get(machine_id)
    return machine.machine_name if machine else f"Machine {machine_id}"


def task_dict(item, machines: dict) -> dict:
    return {
        "id": item.id,
        "task_id": f"task-{item.id}",
        "task_name": f"{item.njo} - {item.part_name}",
        "njo": item.njo,
        "part_name": item.part_name,
        "start": item.start_date.isoformat(),
        "end": item.finish_date.isoformat(),
        "priority": item.priority,
        "priority_alpha": item.priority_alpha,
        "material_status": item.material_status,
        "status": item.status,
        "progress": item.progress,
        "ppic_notes": item.ppic_notes,
        "color": priority_color(item.priority),
        "machines": [
            {
                "machine_id": a.machine_id,
                "machine_name": _machine_name(machines, a.machine_id),
                "machine_code": machines[a.machine_id].machine_code if a.machine_id in machines else "",
                "duration_hours": a.target_hours,
                "scheduled_start": a.scheduled_start.isoformat() if a.scheduled_start else None,
                "scheduled_end": a.scheduled_end.isoformat() if a.scheduled_end else None,
                "status": a.status,
                "sequence": a.sequence,
            }
            for a in sorted(item.assignments, key=lambda a: a.sequence)
        ],
    }


def summarize(items) -> dict:
    total = len(items)
    ready = sum(1 for i in items if i.material_status == "Ready")
    return {
        "total": total,
        "pending": sum(1 for i in items if i.status == "pending"),
        "in_progress": sum(1 for i in items if i.status == "in_progress"),
        "completed": sum(1 for i in items if i.status == "completed"),
        "on_hold": sum(1 for i in items if i.status == "on_hold"),
        "top_urgent": sum(1 for i in items if i.priority == "Top Urgent"),
        "urgent": sum(1 for i in items if i.priority == "Urgent"),
        "medium": sum(1 for i in items if i.priority == "Medium"),
        "low": sum(1 for i in items if i.priority == "Low"),
        "material_ready": ready,
        "material_not_ready": total - ready,
    }


def _sections(visible, machines: dict, group_by: str) -> list[dict]:
    if group_by == "priority":
        sections = []
        for priority in PRIORITIES:
            tasks = [task_dict(i, machines) for i in visible if i.priority == priority]
            if tasks:
                sections.append({"id": f"priority-{priority}", "name": priority, "tasks": tasks})
        return sections

    if group_by == "machine":
        buckets: dict = {}
        for item in visible:
            for machine_id in sorted({a.machine_id for a in item.assignments}):
                buckets.setdefault(machine_id, []).append(task_dict(item, machines))
        known = [m for m in machines if m in buckets]
        unknown = sorted(m for m in buckets if m not in machines)
        return [
            {"id": f"machine-{m}", "name": _machine_name(machines, m), "tasks": buckets[m]}
            for m in known + unknown
        ]

    return [{"id": "all", "name": "All Tasks", "tasks": [task_dict(i, machines) for i in visible]}]


def build_gantt_chart(items, machines, links, filters: GanttFilter | None = None) -> dict:
    """Pure projection of schedules into the Gantt payload.

    Args:
        items: every schedule (unfiltered; the summary is computed from it).
        machines: Machine rows in display order.
        links: ScheduleLink rows; only links between visible tasks are kept.
        filters: GanttFilter, defaults to no filtering.
    """
    filters = filters or GanttFilter()
    machine_map = {m.id: m for m in machines}

    visible = sorted((i for i in items if filters.matches(i)), key=_sort_key)
    visible_ids = {i.id for i in visible}

    return {
        "sections": _sections(visible, machine_map, filters.group_by),
        "machines": [
            {"id": m.id, "machine_code": m.machine_code, "machine_name": m.machine_name}
            for m in machines
        ],
        "links": [
            {
                "id": link.id,
                "source": f"task-{link.source_schedule_id}",
                "target": f"task-{link.target_schedule_id}",
                "type": LINK_CODE_BY_TYPE.get(link.link_type, "0"),
                "link_type": link.link_type,
            }
            for link in links
            if link.source_schedule_id in visible_ids and link.target_schedule_id in visible_ids
        ],
        "summary": summarize(items),
        "filters_applied": filters.applied(),
        "group_by": filters.group_by,
    }


def get_gantt_chart(filters: GanttFilter | None = None) -> dict:
    """Load schedules, machines and links and project them."""
    items = db.session.execute(select(PPICSchedule)).scalars().all()
    machines = db.session.execute(select(Machine).order_by(Machine.machine_code)).scalars().all()
    links = db.session.execute(select(ScheduleLink).order_by(ScheduleLink.id)).scalars().all()
    return build_gantt_chart(items, machines, links, filters)
