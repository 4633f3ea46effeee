"""
tests/test_gantt.py — Gantt projection.

Most cases call build_gantt_chart directly with plain stand-in objects,
so no database is involved.  One integration case goes through
GET /api/v1/ppic/gantt.

Covers:
    1.  Priority grouping: fixed order, empty sections omitted, colours
    2.  Machine grouping: one entry per assigned machine, unknown names
    3.  Default grouping and unknown group_by
    4.  Filters narrow the sections; the summary stays unfiltered
    5.  Links only between visible tasks, with numeric type codes
    6.  parse_filters validation
"""

from datetime import date
from types import SimpleNamespace

import pytest

from shopfloor.core.exceptions import ValidationError
from shopfloor.services.gantt_service import GanttFilter, build_gantt_chart, parse_filters


def _machine(mid, code, name):
    return SimpleNamespace(id=mid, machine_code=code, machine_name=name)


def _assignment(machine_id, sequence, hours=4.0):
    return SimpleNamespace(machine_id=machine_id, sequence=sequence, target_hours=hours,
                           scheduled_start=None, scheduled_end=None, status="pending")


def _item(iid, priority, start, finish, machine_ids, status="pending", material="Pending"):
    return SimpleNamespace(
        id=iid, njo=f"NJO-{iid}", part_name=f"Part {iid}",
        priority=priority, priority_alpha="", material_status=material,
        status=status, progress=0, ppic_notes="",
        start_date=start, finish_date=finish,
        assignments=[_assignment(m, seq) for seq, m in enumerate(machine_ids, start=1)],
    )


def _link(lid, source, target, link_type="finish_to_start"):
    return SimpleNamespace(id=lid, source_schedule_id=source, target_schedule_id=target, link_type=link_type)


MACHINES = [_machine(1, "CNC-01", "CNC Mill 1"), _machine(2, "EDM-01", "Wire EDM")]


@pytest.fixture()
def items():
    return [
        _item(1, "Low", date(2026, 1, 2), date(2026, 1, 3), [1]),
        _item(2, "Top Urgent", date(2026, 1, 9), date(2026, 1, 10), [1, 2], material="Ready"),
        _item(3, "Top Urgent", date(2026, 1, 4), date(2026, 1, 5), [2], status="completed"),
        _item(4, "Urgent", date(2026, 1, 6), date(2026, 1, 7), [7], status="on_hold"),
    ]


def _task_ids(section):
    return [t["id"] for t in section["tasks"]]


class TestGrouping:
    def test_priority_sections(self, items):
        chart = build_gantt_chart(items, MACHINES, [], GanttFilter(group_by="priority"))
        assert [s["id"] for s in chart["sections"]] == [
            "priority-Top Urgent", "priority-Urgent", "priority-Low",
        ]
        top = chart["sections"][0]
        assert _task_ids(top) == [3, 2]
        assert {t["color"] for t in top["tasks"]} == {"#dc3545"}
        assert chart["sections"][1]["tasks"][0]["color"] == "#fd7e14"
        assert chart["sections"][2]["tasks"][0]["color"] == "#28a745"

    def test_unknown_priority_is_gray(self):
        item = _item(1, "Someday", date(2026, 1, 1), date(2026, 1, 2), [1])
        chart = build_gantt_chart([item], MACHINES, [])
        assert chart["sections"][0]["tasks"][0]["color"] == "#6c757d"

    def test_machine_sections_fan_out(self, items):
        chart = build_gantt_chart(items, MACHINES, [], GanttFilter(group_by="machine"))
        by_id = {s["id"]: s for s in chart["sections"]}
        assert list(by_id) == ["machine-1", "machine-2", "machine-7"]
        assert _task_ids(by_id["machine-1"]) == [2, 1]
        assert _task_ids(by_id["machine-2"]) == [3, 2]
        assert by_id["machine-7"]["name"] == "Machine 7"
        assert by_id["machine-1"]["name"] == "CNC Mill 1"

    def test_default_single_section(self, items):
        chart = build_gantt_chart(items, MACHINES, [])
        assert chart["group_by"] == "all"
        assert len(chart["sections"]) == 1
        section = chart["sections"][0]
        assert section["name"] == "All Tasks"
        assert _task_ids(section) == [3, 2, 4, 1]

    def test_task_shape(self, items):
        task = build_gantt_chart(items, MACHINES, [])["sections"][0]["tasks"][1]
        assert task["task_id"] == "task-2"
        assert task["task_name"] == "NJO-2 - Part 2"
        assert (task["start"], task["end"]) == ("2026-01-09", "2026-01-10")
        assert [m["machine_code"] for m in task["machines"]] == ["CNC-01", "EDM-01"]
        assert [m["sequence"] for m in task["machines"]] == [1, 2]


class TestFiltersAndSummary:
    def test_summary_ignores_filters(self, items):
        chart = build_gantt_chart(items, MACHINES, [], GanttFilter(priority="Low"))
        assert _task_ids(chart["sections"][0]) == [1]
        summary = chart["summary"]
        assert summary["total"] == 4
        assert summary["top_urgent"] == 2
        assert summary["completed"] == 1
        assert summary["on_hold"] == 1
        assert summary["material_ready"] == 1
        assert summary["material_not_ready"] == 3

    def test_date_window_and_machine(self, items):
        f = GanttFilter(start_date=date(2026, 1, 4), end_date=date(2026, 1, 10), machine_id=2)
        chart = build_gantt_chart(items, MACHINES, [], f)
        assert _task_ids(chart["sections"][0]) == [3, 2]
        assert chart["filters_applied"] == {
            "start_date": "2026-01-04", "end_date": "2026-01-10",
            "machine_id": 2, "priority": None, "status": None,
        }

    def test_status_filter(self, items):
        chart = build_gantt_chart(items, MACHINES, [], GanttFilter(status="on_hold"))
        assert _task_ids(chart["sections"][0]) == [4]

    def test_links_between_visible_tasks_only(self, items):
        links = [_link(10, 3, 2), _link(11, 1, 2, "start_to_start"), _link(12, 2, 4, "finish_to_finish")]
        chart = build_gantt_chart(items, MACHINES, links, GanttFilter(priority="Top Urgent"))
        assert chart["links"] == [{
            "id": 10, "source": "task-3", "target": "task-2",
            "type": "0", "link_type": "finish_to_start",
        }]

        all_links = build_gantt_chart(items, MACHINES, links)["links"]
        assert [lk["type"] for lk in all_links] == ["0", "1", "2"]

    def test_machines_listed(self, items):
        chart = build_gantt_chart(items, MACHINES, [])
        assert chart["machines"] == [
            {"id": 1, "machine_code": "CNC-01", "machine_name": "CNC Mill 1"},
            {"id": 2, "machine_code": "EDM-01", "machine_name": "Wire EDM"},
        ]


class TestParseFilters:
    def test_parses_all_fields(self):
        f = parse_filters({
            "start_date": "2026-01-01", "end_date": "2026-01-31",
            "machine_id": "3", "priority": "Urgent", "status": "pending", "group_by": "Machine",
        })
        assert f == GanttFilter(date(2026, 1, 1), date(2026, 1, 31), 3, "Urgent", "pending", "machine")

    def test_unknown_group_by_falls_back(self):
        assert parse_filters({"group_by": "week"}).group_by == "all"

    def test_bad_date(self):
        with pytest.raises(ValidationError):
            parse_filters({"start_date": "soon"})

    def test_inverted_window(self):
        with pytest.raises(ValidationError):
            parse_filters({"start_date": "2026-02-01", "end_date": "2026-01-01"})

    def test_bad_machine_id(self):
        with pytest.raises(ValidationError):
            parse_filters({"machine_id": "cnc"})


@pytest.mark.integration
def test_gantt_endpoint(client, machines):
    rv = client.post("/api/v1/ppic/schedules", json={
        "njo": "NJO-G1", "part_name": "Spindle", "priority": "Urgent",
        "start_date": "2026-04-01", "finish_date": "2026-04-03",
        "machine_assignments": [{"machine_id": machines[0].id}, {"machine_id": machines[2].id}],
    })
    assert rv.status_code == 201

    rv = client.get("/api/v1/ppic/gantt?group_by=machine")
    assert rv.status_code == 200
    body = rv.get_json()
    assert [s["name"] for s in body["sections"]] == ["CNC Mill 1", "Wire EDM"]
    assert body["summary"]["total"] == 1

    assert client.get("/api/v1/ppic/gantt?start_date=bad").status_code == 400
