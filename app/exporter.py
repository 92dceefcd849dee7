from __future__ import annotations

import csv
import io
from pathlib import Path
from typing import Dict, List

from database import assignments_by_event, crew_name_map, get_events_for_batch, get_workload_report


DATA_DIR = Path(__file__).resolve().parent / "data" / "exports"
DATA_DIR.mkdir(parents=True, exist_ok=True)
EXPORT_KINDS = {"csv", "calendar", "workload"}


def _render(header: List[str], rows: List[List]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue()


def _crew_names_by_event(session, events, crew_session=None) -> Dict[int, Dict[str, object]]:
    names = {crew_id: member.name for crew_id, member in crew_name_map(crew_session).items()}
    mapping = assignments_by_event(session, [event.id for event in events])
    return {
        event_id: {
            "foh": names.get(entry["foh"], "") if entry["foh"] is not None else "",
            "stage": [names.get(crew_id, str(crew_id)) for crew_id in entry["stage"]],
        }
        for event_id, entry in mapping.items()
    }


def assignments_csv(session, batch_id: str, *, crew_session=None) -> str:
    """One row per event: Event Name, Date, Venue, Vertical, FOH, Stage Crew."""
    events = get_events_for_batch(session, batch_id)
    crew_by_event = _crew_names_by_event(session, events, crew_session)
    rows = []
    for event in events:
        entry = crew_by_event.get(event.id, {"foh": "", "stage": []})
        rows.append(
            [
                event.name,
                event.event_date.isoformat(),
                event.venue,
                event.vertical,
                entry["foh"],
                ", ".join(entry["stage"]),
            ]
        )
    return _render(["Event Name", "Date", "Venue", "Vertical", "FOH", "Stage Crew"], rows)


def calendar_csv(session, batch_id: str, *, crew_session=None) -> str:
    """One row per production, spanning the first to last date of its group."""
    events = get_events_for_batch(session, batch_id)
    crew_by_event = _crew_names_by_event(session, events, crew_session)
    productions: Dict[str, List] = {}
    for event in events:
        key = event.event_group or f"single_{event.id}"
        productions.setdefault(key, []).append(event)
    rows = []
    for members in productions.values():
        members.sort(key=lambda event: event.event_date)
        first, last = members[0], members[-1]
        entry = crew_by_event.get(first.id, {"foh": "", "stage": []})
        description = (
            f"Venue: {first.venue} | Vertical: {first.vertical} | "
            f"FOH: {entry['foh']} | Stage: {', '.join(entry['stage'])}"
        )
        rows.append([first.name, first.event_date.isoformat(), last.event_date.isoformat(), description])
    return _render(["Subject", "Start Date", "End Date", "Description"], rows)


def workload_csv(session, month: str, *, crew_session=None) -> str:
    report = get_workload_report(session, month, crew_session=crew_session)
    rows = [[entry["name"], entry["level"], int(entry["assignments"])] for entry in report]
    return _render(["Crew Name", "Level", "Assignments This Month"], rows)


def export_file(session, kind: str, key: str, *, crew_session=None) -> Path:
    """Write an export to DATA_DIR and return its path. `key` is a batch id or, for workload, a month."""
    kind = kind.lower()
    if kind not in EXPORT_KINDS:
        raise ValueError(f"kind must be one of {', '.join(sorted(EXPORT_KINDS))}")
    if kind == "csv":
        content = assignments_csv(session, key, crew_session=crew_session)
        filename = DATA_DIR / f"crew_assignments_{key}.csv"
    elif kind == "calendar":
        content = calendar_csv(session, key, crew_session=crew_session)
        filename = DATA_DIR / f"calendar_import_{key}.csv"
    else:
        content = workload_csv(session, key, crew_session=crew_session)
        filename = DATA_DIR / f"workload_{key}.csv"
    filename.write_text(content, encoding="utf-8")
    return filename
