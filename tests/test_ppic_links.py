"""
tests/test_ppic_links.py — Schedule dependency links.

Covers:
    1.  Validation: self link, unknown type, missing schedule, no machines,
        no shared machine, duplicate
    2.  Finish-to-start auto reschedule: start = source finish + 1 day,
        duration kept, no-op when the target already starts later
    3.  Other link types never move the target
    4.  Legacy numeric / hyphenated link type spellings
    5.  Deleting a link leaves dates where they are
    6.  HTTP: POST returns the (possibly moved) target, list filters
"""

from datetime import date

import pytest

from shopfloor.core.exceptions import NotFoundError, ValidationError
from shopfloor.models import db
from shopfloor.models.ppic import PPICSchedule, normalize_link_type
from shopfloor.services import link_service, ppic_schedule_service

BASE = "/api/v1/ppic"


def _schedule(machines, njo, start, finish):
    return ppic_schedule_service.create_schedule({
        "njo": njo,
        "part_name": f"Part {njo}",
        "start_date": start,
        "finish_date": finish,
        "machine_assignments": [{"machine_id": m.id} for m in machines],
    })


@pytest.fixture()
def pair(machines):
    """Source 1..10 Jan on CNC-01; target 5..8 Jan on CNC-01 + EDM-01."""
    src = _schedule([machines[0]], "SRC", date(2026, 1, 1), date(2026, 1, 10))
    tgt = _schedule([machines[0], machines[2]], "TGT", date(2026, 1, 5), date(2026, 1, 8))
    return src, tgt


# ═════════════════════════════════════════════════════════════════════════
# normalize_link_type
# ═════════════════════════════════════════════════════════════════════════

class TestNormalizeLinkType:
    @pytest.mark.parametrize("raw,expected", [
        (None, "finish_to_start"),
        ("", "finish_to_start"),
        ("0", "finish_to_start"),
        ("1", "start_to_start"),
        ("2", "finish_to_finish"),
        ("3", "start_to_finish"),
        ("Finish-To-Start", "finish_to_start"),
        ("start_to_finish", "start_to_finish"),
        (2, "finish_to_finish"),
    ])
    def test_known_spellings(self, raw, expected):
        assert normalize_link_type(raw) == expected

    @pytest.mark.parametrize("raw", ["4", "before", "fs"])
    def test_unknown(self, raw):
        assert normalize_link_type(raw) is None


# ═════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════

class TestLinkValidation:
    def test_self_link(self, pair):
        src, _ = pair
        with pytest.raises(ValidationError):
            link_service.create_link(src.id, src.id)

    def test_unknown_type(self, pair):
        src, tgt = pair
        with pytest.raises(ValidationError) as exc:
            link_service.create_link(src.id, tgt.id, "7")
        assert exc.value.details["link_type"] == "invalid"

    def test_missing_schedule(self, pair):
        src, _ = pair
        with pytest.raises(NotFoundError):
            link_service.create_link(src.id, 98765)

    def test_no_common_machine(self, machines):
        a = _schedule([machines[0]], "A", date(2026, 1, 1), date(2026, 1, 2))
        b = _schedule([machines[1]], "B", date(2026, 1, 5), date(2026, 1, 6))
        with pytest.raises(ValidationError) as exc:
            link_service.create_link(a.id, b.id)
        assert exc.value.details["machines"] == "no common machine"

    def test_neither_has_machines(self):
        # rows written directly; the service never creates machine-less schedules
        a = PPICSchedule(njo="BARE-A", part_name="x", start_date=date(2026, 1, 1), finish_date=date(2026, 1, 2))
        b = PPICSchedule(njo="BARE-B", part_name="y", start_date=date(2026, 1, 3), finish_date=date(2026, 1, 4))
        db.session.add_all([a, b])
        db.session.commit()
        with pytest.raises(ValidationError) as exc:
            link_service.create_link(a.id, b.id)
        assert exc.value.details["machines"] == "none assigned"

    def test_duplicate(self, pair):
        src, tgt = pair
        link_service.create_link(src.id, tgt.id)
        with pytest.raises(ValidationError) as exc:
            link_service.create_link(src.id, tgt.id, "start_to_start")
        assert "link_id" in exc.value.details

    def test_failed_validation_does_not_move_target(self, machines):
        a = _schedule([machines[0]], "A", date(2026, 1, 1), date(2026, 1, 10))
        b = _schedule([machines[1]], "B", date(2026, 1, 5), date(2026, 1, 6))
        with pytest.raises(ValidationError):
            link_service.create_link(a.id, b.id)
        assert ppic_schedule_service.get_schedule(b.id).start_date == date(2026, 1, 5)


# ═════════════════════════════════════════════════════════════════════════
# Auto reschedule
# ═════════════════════════════════════════════════════════════════════════

class TestAutoReschedule:
    def test_fs_pushes_target_and_keeps_duration(self, pair):
        src, tgt = pair
        link = link_service.create_link(src.id, tgt.id)
        assert link.link_type == "finish_to_start"
        tgt = ppic_schedule_service.get_schedule(tgt.id)
        assert tgt.start_date == date(2026, 1, 11)
        assert tgt.finish_date == date(2026, 1, 14)

    def test_target_starting_on_source_finish_moves(self, machines):
        a = _schedule([machines[0]], "A", date(2026, 1, 1), date(2026, 1, 10))
        b = _schedule([machines[0]], "B", date(2026, 1, 10), date(2026, 1, 10))
        link_service.create_link(a.id, b.id)
        b = ppic_schedule_service.get_schedule(b.id)
        assert (b.start_date, b.finish_date) == (date(2026, 1, 11), date(2026, 1, 11))

    def test_target_already_after_is_untouched(self, machines):
        a = _schedule([machines[0]], "A", date(2026, 1, 1), date(2026, 1, 10))
        b = _schedule([machines[0]], "B", date(2026, 1, 15), date(2026, 1, 18))
        link_service.create_link(a.id, b.id)
        b = ppic_schedule_service.get_schedule(b.id)
        assert (b.start_date, b.finish_date) == (date(2026, 1, 15), date(2026, 1, 18))

    @pytest.mark.parametrize("link_type", ["start_to_start", "finish_to_finish", "3"])
    def test_other_types_do_not_move(self, pair, link_type):
        src, tgt = pair
        link_service.create_link(src.id, tgt.id, link_type)
        tgt = ppic_schedule_service.get_schedule(tgt.id)
        assert (tgt.start_date, tgt.finish_date) == (date(2026, 1, 5), date(2026, 1, 8))

    def test_only_one_hop_at_creation(self, machines):
        a = _schedule([machines[0]], "A", date(2026, 1, 1), date(2026, 1, 10))
        b = _schedule([machines[0]], "B", date(2026, 1, 5), date(2026, 1, 6))
        c = _schedule([machines[0]], "C", date(2026, 1, 8), date(2026, 1, 9))
        link_service.create_link(b.id, c.id)
        link_service.create_link(a.id, b.id)
        assert ppic_schedule_service.get_schedule(b.id).start_date == date(2026, 1, 11)
        assert ppic_schedule_service.get_schedule(c.id).start_date == date(2026, 1, 8)

    def test_delete_link_keeps_dates(self, pair):
        src, tgt = pair
        link = link_service.create_link(src.id, tgt.id)
        link_service.delete_link(link.id)
        assert ppic_schedule_service.get_schedule(tgt.id).start_date == date(2026, 1, 11)
        with pytest.raises(NotFoundError):
            link_service.get_link(link.id)


# ═════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════

class TestLinkQueries:
    def test_by_source_target_and_ids(self, machines):
        a = _schedule([machines[0]], "A", date(2026, 1, 1), date(2026, 1, 2))
        b = _schedule([machines[0]], "B", date(2026, 1, 3), date(2026, 1, 4))
        c = _schedule([machines[0]], "C", date(2026, 1, 5), date(2026, 1, 6))
        ab = link_service.create_link(a.id, b.id)
        bc = link_service.create_link(b.id, c.id)

        assert [lk.id for lk in link_service.get_links_by_source(b.id)] == [bc.id]
        assert [lk.id for lk in link_service.get_links_by_target(b.id)] == [ab.id]
        assert [lk.id for lk in link_service.list_links([a.id])] == [ab.id]
        assert link_service.list_links([]) == []
        assert len(link_service.list_links()) == 2


# ═════════════════════════════════════════════════════════════════════════
# HTTP
# ═════════════════════════════════════════════════════════════════════════

@pytest.mark.integration
class TestLinkApi:
    def test_create_returns_moved_target(self, client, pair):
        src, tgt = pair
        rv = client.post(f"{BASE}/links", json={"source_id": src.id, "target_id": tgt.id})
        assert rv.status_code == 201
        body = rv.get_json()
        assert body["link_type"] == "finish_to_start"
        assert body["target"]["start_date"] == "2026-01-11"
        assert body["target"]["finish_date"] == "2026-01-14"

    def test_legacy_type_code(self, client, pair):
        src, tgt = pair
        rv = client.post(f"{BASE}/links", json={"source_id": src.id, "target_id": tgt.id, "type": "1"})
        assert rv.get_json()["link_type"] == "start_to_start"

    def test_machine_mismatch_is_400(self, client, machines):
        a = _schedule([machines[0]], "A", date(2026, 1, 1), date(2026, 1, 2))
        b = _schedule([machines[1]], "B", date(2026, 1, 3), date(2026, 1, 4))
        rv = client.post(f"{BASE}/links", json={"source_id": a.id, "target_id": b.id})
        assert rv.status_code == 400
        assert rv.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_list_and_delete(self, client, pair):
        src, tgt = pair
        link_id = client.post(f"{BASE}/links", json={"source_id": src.id, "target_id": tgt.id}).get_json()["id"]

        assert client.get(f"{BASE}/links?source_id={src.id}").get_json()["total"] == 1
        assert client.get(f"{BASE}/links?target_id={src.id}").get_json()["total"] == 0

        detail = client.get(f"{BASE}/schedules/{tgt.id}").get_json()
        assert [lk["id"] for lk in detail["predecessors"]] == [link_id]

        assert client.delete(f"{BASE}/links/{link_id}").status_code == 200
        assert client.delete(f"{BASE}/links/{link_id}").status_code == 404
