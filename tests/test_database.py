from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    Event,
    WorkloadHistory,
    add_assignment_rows,
    add_unavailability,
    apply_unavailability_bulk,
    assignments_by_event,
    get_assignments_for_batch,
    list_crew,
    list_unavailability,
    load_unavailability_map,
    load_workload_totals,
    merge_workload_deltas,
    month_key,
    remove_unavailability,
    update_stage_crew_needed,
    upsert_crew_member,
)

MAY_3 = datetime.date(2024, 5, 3)


@pytest.fixture()
def crew(memory_db):
    with memory_db.crew_session_factory() as crew_session:
        junior = upsert_crew_member(crew_session, {"name": "Neel", "level": "Junior"})
        senior = upsert_crew_member(
            crew_session,
            {"name": "Asha", "level": "Senior", "venue_capabilities": {"JBT": "Y*"}},
        )
    return memory_db, junior.id, senior.id


def test_upsert_crew_member_updates_by_name(crew) -> None:
    memory_db, junior_id, _ = crew
    with memory_db.crew_session_factory() as crew_session:
        member = upsert_crew_member(crew_session, {"name": "Neel", "level": "Mid", "can_stage": False})
        assert member.id == junior_id
        listed = list_crew(crew_session)

    assert [entry["name"] for entry in listed] == ["Asha", "Neel"]
    assert listed[0]["venue_capabilities"] == {"JBT": "Y*"}
    assert listed[1]["can_stage"] is False


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"name": ""}, "name is required"),
        ({"name": "Omar", "level": "Intern"}, "Unsupported crew level"),
        ({"id": 99, "name": "Omar"}, "not found"),
    ],
)
def test_upsert_crew_member_validates(memory_db, payload, message) -> None:
    with memory_db.crew_session_factory() as crew_session:
        with pytest.raises(ValueError, match=message):
            upsert_crew_member(crew_session, payload)


def test_unavailability_add_remove_and_list(crew) -> None:
    memory_db, junior_id, senior_id = crew
    with memory_db.crew_session_factory() as crew_session:
        assert add_unavailability(crew_session, junior_id, "2024-05-03", "Wedding") is True
        assert add_unavailability(crew_session, junior_id, MAY_3) is False
        assert add_unavailability(crew_session, senior_id, "2024-06-01") is True

        may = list_unavailability(crew_session, month="2024-05")
        assert [(row["crew_name"], row["unavailable_date"], row["reason"]) for row in may] == [
            ("Neel", MAY_3, "Wedding")
        ]
        assert len(list_unavailability(crew_session)) == 2
        assert load_unavailability_map(crew_session, [MAY_3]) == {MAY_3: {junior_id}}
        assert load_unavailability_map(crew_session, []) == {}

        assert remove_unavailability(crew_session, junior_id, MAY_3) is True
        assert remove_unavailability(crew_session, junior_id, MAY_3) is False


def test_list_unavailability_december_rolls_into_next_year(crew) -> None:
    memory_db, junior_id, _ = crew
    with memory_db.crew_session_factory() as crew_session:
        add_unavailability(crew_session, junior_id, "2024-12-31")
        add_unavailability(crew_session, junior_id, "2025-01-01")
        december = list_unavailability(crew_session, month="2024-12")
    assert [row["unavailable_date"] for row in december] == [datetime.date(2024, 12, 31)]


def test_bulk_unavailability_is_all_or_nothing(crew) -> None:
    memory_db, junior_id, senior_id = crew
    with memory_db.crew_session_factory() as crew_session:
        add_unavailability(crew_session, senior_id, MAY_3)
        counts = apply_unavailability_bulk(
            crew_session,
            [
                {"crew_id": junior_id, "unavailable_date": "2024-05-03", "action": "add"},
                {"crew_id": junior_id, "unavailable_date": "2024-05-03", "action": "add"},
                {"crew_id": senior_id, "unavailable_date": "2024-05-03", "action": "remove"},
            ],
        )
        assert counts == {"added": 1, "removed": 1}

        with pytest.raises(ValueError, match="Unsupported unavailability action"):
            apply_unavailability_bulk(
                crew_session,
                [
                    {"crew_id": senior_id, "unavailable_date": "2024-05-10"},
                    {"crew_id": senior_id, "unavailable_date": "2024-05-11", "action": "toggle"},
                ],
            )
        assert load_unavailability_map(crew_session) == {MAY_3: {junior_id}}


def test_update_stage_crew_needed(memory_db) -> None:
    with memory_db.session_factory() as session:
        event = Event(batch_id="b", name="Play", event_date=MAY_3, venue="JBT", vertical="Theatre")
        session.add(event)
        session.commit()

        assert update_stage_crew_needed(session, event.id, "3").stage_crew_needed == 3
        with pytest.raises(ValueError, match="cannot be negative"):
            update_stage_crew_needed(session, event.id, -1)
        with pytest.raises(ValueError, match="must be an integer"):
            update_stage_crew_needed(session, event.id, "lots")
        with pytest.raises(ValueError, match="not found"):
            update_stage_crew_needed(session, 999, 2)


def test_assignment_rows_are_grouped_by_event(crew) -> None:
    memory_db, junior_id, senior_id = crew
    with memory_db.session_factory() as session:
        event = Event(batch_id="b", name="Play", event_date=MAY_3, venue="JBT", vertical="Theatre")
        session.add(event)
        session.flush()
        add_assignment_rows(session, event.id, [(junior_id, "Stage"), (senior_id, "FOH")], overridden=True)
        with pytest.raises(ValueError, match="Unsupported assignment role"):
            add_assignment_rows(session, event.id, [(junior_id, "Lights")])
        session.commit()

        mapping = assignments_by_event(session, [event.id])
        assert mapping == {event.id: {"foh": senior_id, "stage": [junior_id], "overridden": True}}
        rows = get_assignments_for_batch(session, "b", crew_session=None)
    assert [(row["crew_name"], row["role"]) for row in rows] == [("Asha", "FOH"), ("Neel", "Stage")]
    assert isinstance(rows[0]["event_date"], datetime.date)


def test_merge_workload_deltas_modes(memory_db) -> None:
    with memory_db.session_factory() as session:
        session.add(WorkloadHistory(crew_id=1, month="2024-05", assignment_count=4))
        session.commit()

        merge_workload_deltas(session, "2024-05", {1: 2, 2: 0, 3: 1})
        session.commit()
        assert load_workload_totals(session, ["2024-05"]) == {1: 6, 3: 1}

        merge_workload_deltas(session, "2024-05", {1: 2}, mode="replace_batch", batch_id="b1")
        session.commit()
        merge_workload_deltas(session, "2024-05", {1: 3}, mode="replace_batch", batch_id="b1")
        session.commit()
        assert load_workload_totals(session, ["2024-05"])[1] == 9

        with pytest.raises(ValueError):
            merge_workload_deltas(session, "2024-05", {1: 1}, mode="overwrite")
        with pytest.raises(ValueError):
            merge_workload_deltas(session, "2024-05", {1: 1}, mode="replace_batch")


def test_month_key_accepts_datetimes() -> None:
    assert month_key(datetime.datetime(2024, 1, 9, 12, 0)) == "2024-01"
    assert month_key(datetime.date(2023, 11, 30)) == "2023-11"
