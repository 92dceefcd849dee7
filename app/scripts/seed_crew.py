from __future__ import annotations

import datetime
import sys
from pathlib import Path
from typing import Dict, List

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from capabilities import parse_capability, parse_level  # noqa: E402
from database import CrewMember, CrewSessionLocal, CrewUnavailability, init_database  # noqa: E402

ALL_VENUES = ["JBT", "Tata", "Experimental", "Little Theatre", "Godrej Dance", "Others"]


def _venues(label: str, **overrides: str) -> Dict[str, str]:
    mapping = {venue: label for venue in ALL_VENUES}
    mapping.update({key.replace("_", " "): value for key, value in overrides.items()})
    return mapping


def _checked(entry: Dict) -> bool:
    try:
        parse_level(entry["level"])
        for label in list(entry["venues"].values()) + list(entry["verticals"].values()):
            parse_capability(label)
    except ValueError as exc:
        print(f"[seed] Skipping {entry['name']}: {exc}")
        return False
    return True


SAMPLE_CREW: List[Dict] = [
    {
        "name": "Anil Kapoor",
        "level": "Senior",
        "venues": _venues("Y", JBT="Y*"),
        "verticals": {"Theatre": "Y*", "Dance": "Y", "Int'l Music": "Y", "Indian Music": "Y*"},
        "unavailable_days": [3, 17],
    },
    {
        "name": "Meera Iyer",
        "level": "Senior",
        "venues": _venues("Y"),
        "verticals": {"Theatre": "Y", "Dance": "Y*", "Int'l Music": "Y*", "Indian Music": "Y"},
        "unavailable_days": [10],
    },
    {
        "name": "Rahul Desai",
        "level": "Mid",
        "venues": _venues("Y", Tata="Y*"),
        "verticals": {"Theatre": "Y", "Dance": "Y*", "Int'l Music": "Y", "Indian Music": "Y"},
        "unavailable_days": [],
    },
    {
        "name": "Farah Sheikh",
        "level": "Mid",
        "venues": _venues("Y", JBT="N"),
        "verticals": {"Theatre": "Y*", "Dance": "Y", "Int'l Music": "Exp only", "Indian Music": "Y"},
        "unavailable_days": [5, 6],
    },
    {
        "name": "Vikram Rao",
        "level": "Junior",
        "venues": _venues("Y", JBT="N", Tata="N"),
        "verticals": {"Theatre": "Y", "Dance": "Y", "Int'l Music": "Exp only", "Indian Music": "Y"},
        "unavailable_days": [],
        "stage_only_if_urgent": True,
    },
    {
        "name": "Sneha Pillai",
        "level": "Junior",
        "venues": _venues("Y", JBT="N"),
        "verticals": {"Theatre": "Y", "Dance": "Y", "Int'l Music": "N", "Indian Music": "Y"},
        "unavailable_days": [12],
    },
    {
        "name": "Kabir Mehta",
        "level": "Junior",
        "venues": _venues("N", Experimental="Y", Little_Theatre="Y"),
        "verticals": {"Theatre": "Y", "Dance": "N", "Int'l Music": "N", "Indian Music": "Y"},
        "unavailable_days": [],
    },
    {
        "name": "Joseph D'Souza",
        "level": "Hired",
        "venues": {},
        "verticals": {},
        "unavailable_days": [20, 21],
    },
    {
        "name": "Tanvi Kulkarni",
        "level": "Hired",
        "venues": {},
        "verticals": {},
        "unavailable_days": [],
    },
    {
        "name": "Rohan Bhatt",
        "level": "Mid",
        "venues": _venues("Y"),
        "verticals": {"Theatre": "Y", "Dance": "Y", "Int'l Music": "Y", "Indian Music": "Y"},
        "unavailable_days": [],
        "can_stage": False,
    },
]


def _unavailable_dates(days: List[int], today: datetime.date) -> List[datetime.date]:
    base = (today.replace(day=1) + datetime.timedelta(days=32)).replace(day=1)
    return [base.replace(day=day) for day in days]


def seed_crew(today: datetime.date | None = None) -> None:
    init_database()
    today = today or datetime.date.today()
    created = 0
    refreshed = 0
    with CrewSessionLocal() as session:
        for entry in SAMPLE_CREW:
            if not _checked(entry):
                continue
            stmt = select(CrewMember).where(CrewMember.name == entry["name"])
            member = session.scalars(stmt).first()
            if not member:
                member = CrewMember(name=entry["name"])
                session.add(member)
                created += 1
            else:
                refreshed += 1
            member.level = entry["level"]
            member.can_stage = entry.get("can_stage", True)
            member.stage_only_if_urgent = entry.get("stage_only_if_urgent", False)
            member.venue_capabilities = entry["venues"]
            member.vertical_capabilities = entry["verticals"]
            session.flush()
            existing = {row.unavailable_date for row in member.unavailability}
            for day in _unavailable_dates(entry.get("unavailable_days", []), today):
                if day not in existing:
                    session.add(CrewUnavailability(crew_id=member.id, unavailable_date=day, reason="Seeded leave"))
        session.commit()
    print(f"Seed complete. Created {created} crew members, refreshed {refreshed} profiles.")


if __name__ == "__main__":
    seed_crew()
