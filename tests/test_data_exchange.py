from __future__ import annotations

import datetime
import json
import sys
from pathlib import Path

import pytest
from sqlalchemy import delete, select

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import CrewMember, CrewUnavailability, Event  # noqa: E402
from data_exchange import (  # noqa: E402
    export_crew,
    import_crew,
    import_events,
    load_events_csv,
    new_batch_id,
    normalize_venue,
    normalize_vertical,
)
from policy import build_default_policy  # noqa: E402


@pytest.fixture()
def policy():
    return build_default_policy()


@pytest.fixture()
def exports(monkeypatch, tmp_path):
    # Keep exports in a temp folder to avoid polluting the repo.
    monkeypatch.setattr("data_exchange.EXPORT_DIR", tmp_path)
    return tmp_path


def test_normalize_venue_resolves_aliases(policy) -> None:
    assert normalize_venue("JBT", policy) == ("JBT", ["JBT"])
    assert normalize_venue("Jamshed Bhabha Theatre", policy) == ("JBT", ["JBT"])
    assert normalize_venue("  tata theatre ", policy) == ("Tata", ["Tata"])
    assert normalize_venue("Godrej Dance Theatre", policy) == ("Godrej Dance", ["Godrej Dance"])


def test_normalize_venue_unknown_falls_back(policy) -> None:
    assert normalize_venue("Rooftop Lawn", policy) == ("Others", [])
    assert normalize_venue("", policy) == ("Others", [])


def test_normalize_venue_reports_every_named_venue(policy) -> None:
    assert normalize_venue("JBT / Tata", policy) == ("JBT", ["JBT", "Tata"])
    assert normalize_venue("Experimental & Little Theatre", policy) == (
        "Experimental",
        ["Experimental", "Little Theatre"],
    )


def test_normalize_vertical_uses_aliases(policy) -> None:
    assert normalize_vertical("Intl Music", policy) == "Int'l Music"
    assert normalize_vertical("theater", policy) == "Theatre"
    assert normalize_vertical("Dance", policy) == "Dance"


def test_new_batch_ids_are_unique() -> None:
    first, second = new_batch_id(), new_batch_id()
    assert first.startswith("batch_")
    assert first != second


def test_import_events_groups_productions(memory_db, policy) -> None:
    rows = [
        {"name": "Gala", "date": "2024-05-01", "venue": "JBT", "vertical": "Dance"},
        {"name": "Gala", "date": "2024-05-02", "venue": "JBT", "vertical": "Dance"},
        {"name": "Gala", "date": "2024-05-03", "venue": "JBT", "vertical": "Dance"},
        {"name": "Jazz Trio", "date": "2024-05-04", "venue": "Experimental", "vertical": "Intl Music"},
        {"name": "Crossover", "date": "2024-05-05", "venue": "JBT / Tata", "vertical": "Theatre"},
    ]
    with memory_db.session_factory() as session:
        result = import_events(session, rows, policy=policy, batch_id="batch_fixed")

    assert result["batch_id"] == "batch_fixed"
    events = {(entry["name"], entry["event_date"]): entry for entry in result["events"]}
    gala = [entry for entry in result["events"] if entry["name"] == "Gala"]
    assert len({entry["event_group"] for entry in gala}) == 1
    assert gala[0]["event_group"] is not None
    assert all(entry["is_multi_day"] and entry["total_days"] == 3 for entry in gala)
    assert all(entry["stage_crew_needed"] == 2 for entry in gala)

    jazz = events[("Jazz Trio", datetime.date(2024, 5, 4))]
    assert jazz["event_group"] is None
    assert jazz["vertical"] == "Int'l Music"
    assert jazz["stage_crew_needed"] == 1
    assert jazz["is_multi_day"] is False

    crossover = events[("Crossover", datetime.date(2024, 5, 5))]
    assert crossover["needs_manual_review"] is True
    assert crossover["manual_flag_reason"] == "Multiple venues: JBT, Tata"
    assert crossover["venue"] == "JBT / Tata"
    assert crossover["venue_normalized"] == "JBT"

    with memory_db.session_factory() as session:
        stored = session.scalars(select(Event).where(Event.batch_id == "batch_fixed")).all()
    assert len(stored) == 5


def test_import_events_keeps_explicit_stage_counts(memory_db, policy) -> None:
    rows = [{"name": "Big Band", "date": "2024-06-01", "venue": "Tata", "vertical": "Int'l Music", "stage_crew_needed": 4}]
    with memory_db.session_factory() as session:
        result = import_events(session, rows, policy=policy)

    assert result["batch_id"].startswith("batch_")
    assert result["events"][0]["stage_crew_needed"] == 4


@pytest.mark.parametrize(
    "row, message",
    [
        ({"name": "", "date": "2024-05-01", "venue": "JBT", "vertical": "Dance"}, "name is required"),
        ({"name": "Gala", "date": "05/01/2024", "venue": "JBT", "vertical": "Dance"}, "Invalid date"),
    ],
)
def test_import_events_rejects_bad_rows(memory_db, policy, row, message) -> None:
    with memory_db.session_factory() as session:
        with pytest.raises(ValueError, match=message):
            import_events(session, [row], policy=policy)
        assert session.scalars(select(Event)).all() == []


def test_load_events_csv_with_and_without_header(tmp_path) -> None:
    with_header = tmp_path / "with_header.csv"
    with_header.write_text(
        "name,date,venue,vertical\nGala,2024-05-01,JBT,Dance\n\n\"Jazz, Live\",2024-05-02,Experimental,Intl Music\n",
        encoding="utf-8",
    )
    bare = tmp_path / "bare.csv"
    bare.write_text("Gala,2024-05-01,JBT,Dance\n", encoding="utf-8")

    rows = load_events_csv(with_header)
    assert rows == [
        {"name": "Gala", "date": "2024-05-01", "venue": "JBT", "vertical": "Dance"},
        {"name": "Jazz, Live", "date": "2024-05-02", "venue": "Experimental", "vertical": "Intl Music"},
    ]
    assert load_events_csv(bare) == [{"name": "Gala", "date": "2024-05-01", "venue": "JBT", "vertical": "Dance"}]


def test_load_events_csv_rejects_short_rows(tmp_path) -> None:
    path = tmp_path / "short.csv"
    path.write_text("Gala,2024-05-01\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Line 1"):
        load_events_csv(path)


def test_crew_export_import_round_trip(memory_db, exports) -> None:
    with memory_db.crew_session_factory() as crew_session:
        member = CrewMember(name="Ira", level="Mid", can_stage=False, stage_only_if_urgent=True)
        member.venue_capabilities = {"JBT": "Y*", "Tata": "N"}
        member.vertical_capabilities = {"Dance": "Y", "Int'l Music": "Exp only"}
        crew_session.add(member)
        crew_session.flush()
        crew_session.add(CrewUnavailability(crew_id=member.id, unavailable_date=datetime.date(2024, 5, 3), reason="Leave"))
        crew_session.commit()
        path = export_crew(crew_session)

    assert path.parent == exports
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["crew"][0]["unavailability"] == [{"date": "2024-05-03", "reason": "Leave"}]

    with memory_db.crew_session_factory() as crew_session:
        crew_session.execute(delete(CrewUnavailability))
        crew_session.execute(delete(CrewMember))
        crew_session.commit()
        created, updated = import_crew(crew_session, path)
        restored = crew_session.scalars(select(CrewMember)).one()
        assert (created, updated) == (1, 0)
        assert restored.level == "Mid"
        assert restored.can_stage is False
        assert restored.stage_only_if_urgent is True
        assert restored.venue_capabilities == {"JBT": "Y*", "Tata": "N"}
        assert restored.vertical_capabilities == {"Dance": "Y", "Int'l Music": "Exp only"}
        assert crew_session.scalars(select(CrewUnavailability.unavailable_date)).all() == [datetime.date(2024, 5, 3)]

        created, updated = import_crew(crew_session, path)
        assert (created, updated) == (0, 1)
        assert crew_session.scalars(select(CrewUnavailability)).all()[0].reason == "Leave"


def test_import_crew_skips_unknown_levels(memory_db, tmp_path) -> None:
    path = tmp_path / "crew.json"
    path.write_text(json.dumps({"crew": [{"name": "Ghost", "level": "Intern"}, {"name": "  "}]}), encoding="utf-8")
    with memory_db.crew_session_factory() as crew_session:
        assert import_crew(crew_session, path) == (0, 0)
        assert crew_session.scalars(select(CrewMember)).all() == []
