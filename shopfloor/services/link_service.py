"""
Schedule dependency link engine.

A ScheduleLink says "target depends on source".  Creating one validates
that the two schedules share a machine and, for finish-to-start links,
pushes the target so it starts the day after the source finishes while
keeping its duration.

Scope of the automatic reschedule:
    - one hop (only the link's own target moves at creation time),
    - one direction (targets only move later, never earlier),
    - no cycle detection; callers must keep the graph acyclic.
Schedule updates cascade further (see ppic_schedule_service.update_schedule).
Deleting a link never moves dates back.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import or_, select

from shopfloor.core.exceptions import NotFoundError, ValidationError
from shopfloor.models import db
from shopfloor.models.ppic import (
    LINK_FINISH_TO_START,
    LINK_TYPES,
    PPICSchedule,
    ScheduleLink,
    normalize_link_type,
)

logger = logging.getLogger(__name__)


# ── Date arithmetic ──────────────────────────────────────────────────────────


def reschedule_target(source: PPICSchedule, target: PPICSchedule) -> bool:
    """Push ``target`` after ``source`` for a finish-to-start link.

    If target.start <= source.finish: target.start = source.finish + 1 day
    and target.finish = new start + original duration.  Returns True when
    the target moved.  Does not flush or commit.
    """
    if target.start_date > source.finish_date:
        return False
    duration = target.finish_date - target.start_date
    old_start = target.start_date
    target.start_date = source.finish_date + timedelta(days=1)
    target.finish_date = target.start_date + duration
    logger.info(
        "PPICSchedule rescheduled id=%s start %s -> %s (after id=%s)",
        target.id, old_start, target.start_date, source.id,
        extra={"schedule_id": target.id},
    )
    return True


def _get_schedule(schedule_id: int) -> PPICSchedule:
    schedule = db.session.get(PPICSchedule, schedule_id)
    if schedule is None:
        raise NotFoundError(resource="PPICSchedule", resource_id=schedule_id)
    return schedule


def _coerce_id(value, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"})


# ── Public API ───────────────────────────────────────────────────────────────


def create_link(source_id, target_id, link_type: str | None = None) -> ScheduleLink:
    """Create a dependency link, rescheduling the target when needed.

    Raises:
        ValidationError: self link, unknown link type, neither schedule has
            machines, the schedules share no machine, or the link exists.
        NotFoundError: either schedule is missing.
    """
    source_id = _coerce_id(source_id, "source_id")
    target_id = _coerce_id(target_id, "target_id")
    if source_id == target_id:
        raise ValidationError("A schedule cannot be linked to itself",
                              details={"target_id": "same as source_id"})

    canonical = normalize_link_type(link_type)
    if canonical is None:
        raise ValidationError(
            f"Invalid link_type '{link_type}'. Must be one of: {sorted(LINK_TYPES)}",
            details={"link_type": "invalid"},
        )

    source = _get_schedule(source_id)
    target = _get_schedule(target_id)

    source_machines = source.machine_ids
    target_machines = target.machine_ids
    if not source_machines and not target_machines:
        raise ValidationError("Cannot link schedules without machine assignments",
                              details={"machines": "none assigned"})
    if not source_machines & target_machines:
        raise ValidationError("Schedules can only be linked if they share a machine",
                              details={"machines": "no common machine"})

    existing = db.session.execute(
        select(ScheduleLink).where(
            ScheduleLink.source_schedule_id == source_id,
            ScheduleLink.target_schedule_id == target_id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise ValidationError("Link already exists", details={"link_id": existing.id})

    try:
        if canonical == LINK_FINISH_TO_START:
            reschedule_target(source, target)
        link = ScheduleLink(
            source_schedule_id=source_id,
            target_schedule_id=target_id,
            link_type=canonical,
        )
        db.session.add(link)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("ScheduleLink created id=%s %s -> %s (%s)", link.id, source_id, target_id, canonical,
                extra={"link_id": link.id, "schedule_id": target_id})
    return link


def delete_link(link_id: int) -> None:
    """Remove a link. Dates already moved by it stay where they are."""
    link = db.session.get(ScheduleLink, link_id)
    if link is None:
        raise NotFoundError(resource="ScheduleLink", resource_id=link_id)
    db.session.delete(link)
    db.session.commit()
    logger.info("ScheduleLink deleted id=%s", link_id, extra={"link_id": link_id})


def get_link(link_id: int) -> ScheduleLink:
    link = db.session.get(ScheduleLink, link_id)
    if link is None:
        raise NotFoundError(resource="ScheduleLink", resource_id=link_id)
    return link


def list_links(schedule_ids=None) -> list[ScheduleLink]:
    """All links, or only those touching ``schedule_ids``."""
    stmt = select(ScheduleLink).order_by(ScheduleLink.id)
    if schedule_ids is not None:
        ids = list(schedule_ids)
        if not ids:
            return []
        stmt = stmt.where(or_(
            ScheduleLink.source_schedule_id.in_(ids),
            ScheduleLink.target_schedule_id.in_(ids),
        ))
    return db.session.execute(stmt).scalars().all()


def get_links_by_source(source_id: int) -> list[ScheduleLink]:
    return db.session.execute(
        select(ScheduleLink)
        .where(ScheduleLink.source_schedule_id == source_id)
        .order_by(ScheduleLink.id)
    ).scalars().all()


def get_links_by_target(target_id: int) -> list[ScheduleLink]:
    return db.session.execute(
        select(ScheduleLink)
        .where(ScheduleLink.target_schedule_id == target_id)
        .order_by(ScheduleLink.id)
    ).scalars().all()
